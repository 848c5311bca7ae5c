from __future__ import annotations

import logging
import re
import uuid

from sqlalchemy import Text, cast, or_

from iskahomes.extensions import db
from iskahomes.models import Listing, User
from iskahomes.models.listing import LISTING_STATUSES, PUBLIC_LISTING_STATUSES
from iskahomes.services.errors import ServiceError
from iskahomes.services.storage import get_object_store, store_upload
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event
from iskahomes.utils.slugs import unique_slug

logger = logging.getLogger(__name__)

STEPS = (
    "basic-info",
    "categories",
    "specifications",
    "location",
    "pricing",
    "amenities",
    "media",
    "additional-info",
)

LISTING_TYPES = ("unit", "property")
CLOSED_STATUS_MAP = {
    "sold": "sold",
    "rented out": "rented",
    "taken": "sold",
}

_MEDIA_FILE_RE = re.compile(r"^mediaFiles_(\d+)$")
_ADDITIONAL_FILE_RE = re.compile(r"^additionalFile_(\d+)$")


def _float_or_none(value, field: str) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", f"{field} must be a number", 400)


def _int_or_none(value, field: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", f"{field} must be an integer", 400)


def _text(value, limit: int) -> str | None:
    if value is None:
        return None
    return str(value).strip()[:limit] or None


def _list(value, field: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ServiceError("VALIDATION_FAILED", f"{field} must be a list", 400)
    return value


def _dict(value, field: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ServiceError("VALIDATION_FAILED", f"{field} must be an object", 400)
    return value


def assign_slug(listing: Listing) -> str:
    def exists(candidate: str) -> bool:
        q = Listing.query.filter(Listing.slug == candidate)
        if listing.id is not None:
            q = q.filter(Listing.id != listing.id)
        return db.session.query(q.exists()).scalar()

    listing.slug = unique_slug(listing.title or "", exists, fallback="listing")
    return listing.slug


def listing_status_for(status_text: str | None, current: str) -> str:
    """Map the buyer-facing status text onto ``listing_status``."""
    mapped = CLOSED_STATUS_MAP.get((status_text or "").strip().lower())
    if mapped:
        return mapped
    if current in ("sold", "rented"):
        return "active"
    return current


def estimate_revenue(price: float | None, price_type: str | None, ideal_duration: int | None) -> float | None:
    if price is None:
        return None
    if (price_type or "").strip().lower() == "rent":
        return float(price) * float(ideal_duration or 1)
    return float(price)


def _stored_file(file_storage, user: User, subfolder: str) -> dict:
    stored = store_upload(file_storage, folder=f"listings-{int(user.id)}", subfolder=subfolder)
    data = stored.to_dict()
    data["id"] = uuid.uuid4().hex
    data["name"] = file_storage.filename or ""
    return data


def _indexed_files(files, pattern) -> list:
    picked = []
    for key in files.keys() if files else []:
        m = pattern.match(key)
        if m:
            picked.append((int(m.group(1)), files[key]))
    return [f for _, f in sorted(picked, key=lambda p: p[0]) if f and f.filename]


def _step_basic_info(listing: Listing, data: dict, files, user: User) -> None:
    title = _text(data.get("title"), 200)
    if listing.id is None and not title:
        raise ServiceError("VALIDATION_FAILED", "title is required", 400)
    if title is not None and title != listing.title:
        listing.title = title
        assign_slug(listing)
    if "description" in data:
        listing.description = _text(data.get("description"), 20000)
    if "size" in data:
        listing.size = _text(data.get("size"), 64)
    if "status" in data:
        listing.status = _text(data.get("status"), 64)
    if "listing_type" in data:
        ltype = (data.get("listing_type") or "").strip().lower()
        if ltype not in LISTING_TYPES:
            raise ServiceError("VALIDATION_FAILED", "listing_type must be unit or property", 400)
        listing.listing_type = ltype
    if "development_id" in data:
        listing.development_id = _int_or_none(data.get("development_id"), "development_id")
    if listing.id is not None and "listing_status" in data:
        wanted = (data.get("listing_status") or "").strip().lower()
        if wanted not in LISTING_STATUSES:
            raise ServiceError("VALIDATION_FAILED", "Invalid listing_status", 400)
        listing.listing_status = wanted


def _step_categories(listing: Listing, data: dict, files, user: User) -> None:
    if "purposes" in data:
        listing.purposes = _list(data.get("purposes"), "purposes")
    if "types" in data:
        listing.types = _list(data.get("types"), "types")
    if "categories" in data:
        listing.categories = _list(data.get("categories"), "categories")
    if "listing_types" in data:
        listing.listing_types = _dict(data.get("listing_types"), "listing_types")


def _step_specifications(listing: Listing, data: dict, files, user: User) -> None:
    listing.specifications = _dict(data.get("specifications"), "specifications")


def _step_location(listing: Listing, data: dict, files, user: User) -> None:
    for field in ("country", "state", "city", "town"):
        if field in data:
            setattr(listing, field, _text(data.get(field), 80))
    if "full_address" in data:
        listing.full_address = _text(data.get("full_address"), 400)
    if "latitude" in data:
        listing.latitude = _float_or_none(data.get("latitude"), "latitude")
    if "longitude" in data:
        listing.longitude = _float_or_none(data.get("longitude"), "longitude")


def _step_pricing(listing: Listing, data: dict, files, user: User) -> None:
    if "price" in data:
        price = _float_or_none(data.get("price"), "price")
        if price is not None and price < 0:
            raise ServiceError("VALIDATION_FAILED", "price must not be negative", 400)
        listing.price = price
    if "currency" in data:
        listing.currency = (_text(data.get("currency"), 8) or "").upper() or None
    if "price_type" in data:
        listing.price_type = (_text(data.get("price_type"), 16) or "").lower() or None
    if "duration" in data:
        listing.duration = _text(data.get("duration"), 32)
    if "ideal_duration" in data:
        listing.ideal_duration = _int_or_none(data.get("ideal_duration"), "ideal_duration")
    if "time_span" in data:
        listing.time_span = _text(data.get("time_span"), 32)
    if "status" in data:
        listing.status = _text(data.get("status"), 64)
        listing.listing_status = listing_status_for(listing.status, listing.listing_status)
    listing.estimated_revenue = estimate_revenue(listing.price, listing.price_type, listing.ideal_duration)


def _step_amenities(listing: Listing, data: dict, files, user: User) -> None:
    listing.amenities = _dict(data.get("amenities"), "amenities")


def _step_media(listing: Listing, data: dict, files, user: User) -> None:
    media = dict(listing.media or {})
    media.update(_dict(data.get("media"), "media"))
    albums = [dict(a) for a in (media.get("albums") or []) if isinstance(a, dict)]

    uploaded = [_stored_file(f, user, "media") for f in _indexed_files(files, _MEDIA_FILE_RE)]
    if uploaded:
        if not albums:
            albums.append({"id": uuid.uuid4().hex, "name": "General", "isDefault": True, "images": []})
        albums[0]["images"] = list(albums[0].get("images") or []) + uploaded
    media["albums"] = albums

    video = files.get("videoFile") if files else None
    if video and video.filename:
        media["video"] = _stored_file(video, user, "video")
    if not media.get("banner"):
        for album in albums:
            if album.get("images"):
                media["banner"] = album["images"][0]
                break
    # JSON columns are replaced wholesale so SQLAlchemy sees the change.
    listing.media = media
    if "virtualTourUrl" in media:
        listing.virtual_tour_link = _text(media.get("virtualTourUrl"), 1024)


def _step_additional_info(listing: Listing, data: dict, files, user: User) -> None:
    if "additional_information" in data:
        listing.additional_information = _text(data.get("additional_information"), 20000)
    plan = files.get("floorPlan") if files else None
    if plan and plan.filename:
        listing.floor_plan = _stored_file(plan, user, "floor-plans")
    extra = [_stored_file(f, user, "additional") for f in _indexed_files(files, _ADDITIONAL_FILE_RE)]
    if extra:
        listing.additional_files = list(listing.additional_files or []) + extra
    if "model_3d" in data:
        listing.model_3d = data.get("model_3d")


STEP_HANDLERS = {
    "basic-info": _step_basic_info,
    "categories": _step_categories,
    "specifications": _step_specifications,
    "location": _step_location,
    "pricing": _step_pricing,
    "amenities": _step_amenities,
    "media": _step_media,
    "additional-info": _step_additional_info,
}


def create_listing(user: User, step: str, data: dict, files=None) -> Listing:
    if step != "basic-info":
        raise ServiceError("VALIDATION_FAILED", "New listings must start with the basic-info step", 400)
    listing = Listing(
        user_id=int(user.id),
        account_type=user.user_type,
        listing_status="draft",
        upload_status="incomplete",
        last_modified_by=int(user.id),
    )
    _step_basic_info(listing, data or {}, files, user)
    listing.listing_status = "draft"
    listing.upload_status = "incomplete"
    db.session.add(listing)
    db.session.flush()
    log_event("listing_draft_created", actor_user_id=user.id, subject_type="listing", subject_id=listing.id)
    db.session.commit()
    return listing


def owned_listing(user: User, listing_id) -> Listing:
    listing = db.session.get(Listing, _int_or_none(listing_id, "id"))
    if listing is None:
        raise ServiceError("NOT_FOUND", "Listing not found", 404)
    if int(listing.user_id) != int(user.id):
        raise ServiceError("FORBIDDEN", "You do not own this listing", 403)
    return listing


def update_listing_step(user: User, listing_id, step: str, data: dict, files=None) -> Listing:
    handler = STEP_HANDLERS.get(step)
    if handler is None:
        raise ServiceError("INVALID_STEP", f"Unknown step: {step}", 400)
    listing = owned_listing(user, listing_id)
    handler(listing, data or {}, files, user)
    listing.last_modified_by = int(user.id)
    listing.updated_at = utcnow()
    db.session.commit()
    return listing


def publish_listing(user: User, listing_id) -> Listing:
    listing = owned_listing(user, listing_id)
    missing = []
    if not (listing.title or "").strip():
        missing.append("title")
    if listing.price is None:
        missing.append("price")
    if not listing.purposes:
        missing.append("purposes")
    if missing:
        raise ServiceError("VALIDATION_FAILED", f"Missing required fields: {', '.join(missing)}", 400)
    listing.upload_status = "completed"
    if listing.listing_status not in ("sold", "rented"):
        listing.listing_status = "active"
    listing.updated_at = utcnow()
    log_event("listing_published", actor_user_id=user.id, subject_type="listing", subject_id=listing.id)
    db.session.commit()
    return listing


def _json_text_contains(column, value: str):
    # JSON lists are stored as text on SQLite and json on Postgres; match the serialized form.
    return cast(column, Text).ilike(f"%{value}%")


def search_listings(params) -> tuple[list[Listing], int, int, int]:
    page = max(1, _int_or_none(params.get("page"), "page") or 1)
    limit = min(100, max(1, _int_or_none(params.get("limit"), "limit") or 12))

    q = Listing.query.filter(
        Listing.listing_status.in_(PUBLIC_LISTING_STATUSES),
        Listing.upload_status == "completed",
    )
    search = (params.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Listing.title.ilike(like), Listing.description.ilike(like)))
    listing_type = (params.get("listing_type") or "").strip().lower()
    if listing_type:
        q = q.filter(Listing.listing_type == listing_type)
    purpose = (params.get("purpose") or "").strip()
    if purpose:
        q = q.filter(_json_text_contains(Listing.purposes, purpose))
    category = (params.get("category") or "").strip()
    if category:
        q = q.filter(_json_text_contains(Listing.categories, category))
    location = (params.get("location") or "").strip()
    if location:
        like = f"%{location}%"
        q = q.filter(or_(Listing.city.ilike(like), Listing.state.ilike(like), Listing.country.ilike(like)))
    price_min = _float_or_none(params.get("price_min"), "price_min")
    if price_min is not None:
        q = q.filter(Listing.price >= price_min)
    price_max = _float_or_none(params.get("price_max"), "price_max")
    if price_max is not None:
        q = q.filter(Listing.price <= price_max)
    price_type = (params.get("price_type") or "").strip().lower()
    if price_type:
        q = q.filter(Listing.price_type == price_type)

    total = q.count()
    rows = q.order_by(Listing.created_at.desc(), Listing.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total, page, limit


def _is_public(listing: Listing) -> bool:
    return listing.upload_status == "completed" and listing.listing_status in PUBLIC_LISTING_STATUSES


def get_public_listing(*, listing_id=None, slug: str | None = None) -> tuple[Listing, list[Listing]]:
    if slug is not None:
        listing = Listing.query.filter_by(slug=slug).first()
    else:
        listing = db.session.get(Listing, _int_or_none(listing_id, "id"))
    if listing is None or not _is_public(listing):
        raise ServiceError("NOT_FOUND", "Listing not found", 404)

    listing.views_count = int(listing.views_count or 0) + 1
    db.session.commit()

    related = []
    if listing.listing_type == "unit":
        related = (
            Listing.query.filter(
                Listing.user_id == listing.user_id,
                Listing.id != listing.id,
                Listing.listing_status.in_(PUBLIC_LISTING_STATUSES),
                Listing.upload_status == "completed",
            )
            .order_by(Listing.created_at.desc(), Listing.id.desc())
            .limit(6)
            .all()
        )
    return listing, related


def user_listings(user: User, *, listing_status: str | None = None) -> list[Listing]:
    q = Listing.query.filter(Listing.user_id == int(user.id))
    if listing_status:
        if listing_status not in LISTING_STATUSES:
            raise ServiceError("VALIDATION_FAILED", "Invalid listing_status", 400)
        q = q.filter(Listing.listing_status == listing_status)
    return q.order_by(Listing.created_at.desc(), Listing.id.desc()).all()


def listing_file_paths(listing: Listing) -> list[str]:
    """Every stored object path referenced from the listing's JSON columns."""
    paths: list[str] = []

    def walk(node):
        if isinstance(node, dict):
            path = node.get("path")
            if isinstance(path, str) and path:
                paths.append(path)
            for value in node.values():
                if isinstance(value, (dict, list)):
                    walk(value)
        elif isinstance(node, list):
            for value in node:
                walk(value)

    for value in (listing.media, listing.floor_plan, listing.additional_files, listing.model_3d):
        walk(value)
    seen = set()
    return [p for p in paths if not (p in seen or seen.add(p))]


def remove_listing_files(listing: Listing) -> int:
    paths = listing_file_paths(listing)
    if not paths:
        return 0
    try:
        return get_object_store().delete(paths)
    except (ServiceError, OSError):
        logger.exception("listing_file_cleanup_failed listing_id=%s", listing.id)
        return 0


def delete_listing(user: User, listing_id) -> int:
    listing = owned_listing(user, listing_id)
    removed = remove_listing_files(listing)
    lid = listing.id
    db.session.delete(listing)
    log_event("listing_deleted", actor_user_id=user.id, subject_type="listing", subject_id=lid, metadata={"files": removed})
    db.session.commit()
    return removed
