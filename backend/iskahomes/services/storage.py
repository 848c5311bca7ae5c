from __future__ import annotations

import io
import os
import secrets
import time
from dataclasses import dataclass

from flask import current_app
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from iskahomes.services.errors import ServiceError


ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/avi",
    "video/x-msvideo",
    "video/quicktime",
    "video/mov",
    "video/x-ms-wmv",
    "video/wmv",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "model/gltf-binary",
    "model/gltf+json",
    "application/octet-stream",
}

DEFAULT_MAX_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class StoredObject:
    path: str
    url: str
    size: int
    content_type: str
    width: int | None = None
    height: int | None = None

    def to_dict(self) -> dict:
        data = {
            "path": self.path,
            "url": self.url,
            "size": int(self.size),
            "type": self.content_type,
        }
        if self.width is not None:
            data["width"] = self.width
            data["height"] = self.height
        return data


def normalize_object_path(path: str) -> str:
    raw = (path or "").strip().replace("\\", "/")
    if not raw or raw.startswith("/") or ":" in raw.split("/")[0]:
        raise ServiceError("INVALID_PATH", "Invalid file path", 400)
    parts = [p for p in raw.split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise ServiceError("INVALID_PATH", "Invalid file path", 400)
    return "/".join(parts)


def generate_object_name(original_name: str) -> str:
    """``<ms timestamp>_<random>.<ext>``, keeping the uploader's extension."""
    safe = secure_filename(os.path.basename(original_name or ""))
    ext = safe.rsplit(".", 1)[-1].lower() if "." in safe else "bin"
    return f"{int(time.time() * 1000)}_{secrets.token_hex(6)}.{ext}"


def image_dimensions(data: bytes, content_type: str) -> tuple[int | None, int | None]:
    if not (content_type or "").startswith("image/"):
        return None, None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return int(img.width), int(img.height)
    except (UnidentifiedImageError, OSError):
        return None, None


class ObjectStore:
    def put(self, path: str, data: bytes, content_type: str) -> StoredObject:
        raise NotImplementedError

    def delete(self, paths) -> int:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError

    def open(self, path: str):
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str, *, url_prefix: str = "/api/uploads"):
        self.root = os.path.abspath(root)
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _full_path(self, path: str) -> str:
        rel = normalize_object_path(path)
        full = os.path.abspath(os.path.join(self.root, rel))
        if os.path.commonpath([self.root, full]) != self.root:
            raise ServiceError("INVALID_PATH", "Invalid file path", 400)
        return full

    def put(self, path: str, data: bytes, content_type: str) -> StoredObject:
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as fh:
            fh.write(data)
        rel = normalize_object_path(path)
        width, height = image_dimensions(data, content_type)
        return StoredObject(
            path=rel,
            url=self.public_url(rel),
            size=len(data),
            content_type=content_type,
            width=width,
            height=height,
        )

    def delete(self, paths) -> int:
        removed = 0
        for path in paths or []:
            if not path:
                continue
            full = self._full_path(path)
            if os.path.isfile(full):
                os.remove(full)
                removed += 1
        return removed

    def public_url(self, path: str) -> str:
        return f"{self.url_prefix}/{normalize_object_path(path)}"

    def open(self, path: str):
        full = self._full_path(path)
        if not os.path.isfile(full):
            raise ServiceError("NOT_FOUND", "File not found", 404)
        return open(full, "rb")

    def path_for_url(self, url: str) -> str | None:
        raw = (url or "").strip()
        marker = self.url_prefix + "/"
        idx = raw.find(marker)
        if idx < 0:
            return None
        return raw[idx + len(marker):] or None


def get_object_store() -> LocalObjectStore:
    store = current_app.extensions.get("iskahomes_object_store")
    if store is None:
        store = LocalObjectStore(current_app.config["UPLOAD_DIR"])
        current_app.extensions["iskahomes_object_store"] = store
    return store


def validate_upload(content_type: str, size: int, *, max_bytes: int | None = None) -> None:
    limit = int(max_bytes or DEFAULT_MAX_BYTES)
    if int(size) > limit:
        raise ServiceError("FILE_TOO_LARGE", f"File too large. Max {limit // (1024 * 1024)}MB", 400)
    if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        raise ServiceError("INVALID_FILE_TYPE", "Invalid file type", 400)


def store_upload(file_storage, *, folder: str = "general", subfolder: str = "uploads") -> StoredObject:
    """Validate and persist a werkzeug ``FileStorage`` under ``folder/subfolder``."""
    data = file_storage.read()
    content_type = (file_storage.mimetype or file_storage.content_type or "application/octet-stream").lower()
    validate_upload(content_type, len(data), max_bytes=current_app.config.get("UPLOAD_MAX_BYTES"))
    folder_part = secure_filename(folder or "general") or "general"
    sub_part = secure_filename(subfolder or "uploads") or "uploads"
    name = generate_object_name(file_storage.filename or "")
    return get_object_store().put(f"{folder_part}/{sub_part}/{name}", data, content_type)
