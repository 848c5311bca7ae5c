from __future__ import annotations


from flask import Blueprint, g, jsonify, request, send_file

from iskahomes.services.errors import ServiceError
from iskahomes.services.storage import get_object_store, normalize_object_path, store_upload
from iskahomes.utils.auth import require_auth
from iskahomes.utils.clock import utcnow
from iskahomes.utils.http import error_response, get_request_payload, service_error

uploads_bp = Blueprint("uploads_bp", __name__, url_prefix="/api")


@uploads_bp.post("/upload")
@require_auth()
def upload_file():
    file = request.files.get("file")
    if not file or not file.filename:
        return error_response("VALIDATION_FAILED", "No file provided", 400)
    folder = (request.form.get("folder") or "general").strip()
    subfolder = (request.form.get("subfolder") or "uploads").strip()
    try:
        stored = store_upload(file, folder=folder, subfolder=subfolder)
    except ServiceError as e:
        return service_error(e)

    payload = {
        "ok": True,
        "url": stored.url,
        "filename": stored.path.rsplit("/", 1)[-1],
        "originalName": file.filename,
        "size": stored.size,
        "type": stored.content_type,
        "path": stored.path,
        "uploadedAt": utcnow().isoformat(),
        "uploadedBy": int(g.current_user.id),
    }
    if stored.width is not None:
        payload["width"] = stored.width
        payload["height"] = stored.height
    return jsonify(payload), 201


@uploads_bp.delete("/upload")
@require_auth()
def delete_file():
    data = get_request_payload()
    path = (data.get("filePath") or "").strip()
    if not path:
        return error_response("VALIDATION_FAILED", "filePath is required", 400)
    try:
        removed = get_object_store().delete([normalize_object_path(path)])
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "deleted": removed}), 200


@uploads_bp.get("/uploads/<path:object_path>")
def serve_upload(object_path):
    try:
        fh = get_object_store().open(object_path)
    except ServiceError as e:
        return service_error(e)
    return send_file(fh, download_name=object_path.rsplit("/", 1)[-1])
