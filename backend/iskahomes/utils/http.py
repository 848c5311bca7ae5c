from __future__ import annotations

import json

from flask import current_app, g, jsonify, request

from iskahomes.services.errors import ServiceError
from iskahomes.utils.rate_limit import check_limit, rate_limit_enabled, resolve_client_ip, trust_proxy_headers


def error_response(code: str, message: str, status: int, **extra):
    body = {"ok": False, "error": code, "message": message, "status": int(status)}
    body.update(extra)
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        body["trace_id"] = rid
    return jsonify(body), status


def service_error(err: ServiceError):
    return error_response(err.code, err.message, err.status)


def db_failure(exc: Exception, label: str):
    current_app.logger.exception("%s_db_error type=%s", label, type(exc).__name__)
    return error_response("DB_ERROR", "Database operation failed", 500)


def get_request_payload() -> dict:
    data_json = request.get_json(silent=True)
    if isinstance(data_json, dict):
        return data_json
    return request.form.to_dict() if request.form else {}


def step_payload() -> dict:
    """Wizard steps send JSON ``{"data": {...}}`` or multipart with ``data`` as a JSON string."""
    if request.content_type and "multipart/form-data" in request.content_type:
        raw = request.form.get("data") or "{}"
        try:
            data = json.loads(raw)
        except ValueError:
            raise ServiceError("VALIDATION_FAILED", "data must be valid JSON", 400)
    else:
        body = request.get_json(silent=True) or {}
        data = body.get("data", body) if isinstance(body, dict) else {}
    if not isinstance(data, dict):
        raise ServiceError("VALIDATION_FAILED", "data must be an object", 400)
    return data


def rate_limit_response(action: str, *, limit: int, window_seconds: int, user_id: int | None = None, per_ip: bool = True):
    if not rate_limit_enabled(True):
        return None
    parts = [action]
    if per_ip:
        parts.append(f"ip:{resolve_client_ip(request, trusted_proxy=trust_proxy_headers(False))}")
    if user_id is not None:
        parts.append(f"u:{int(user_id)}")
    ok, retry_after = check_limit(":".join(parts), limit=limit, window_seconds=window_seconds)
    if ok:
        return None
    resp, status = error_response(
        "RATE_LIMITED",
        "Too many requests. Please retry later.",
        429,
        retry_after=retry_after,
    )
    resp.headers["Retry-After"] = str(int(retry_after))
    return resp, status


def pagination_args(default_limit: int, *, max_limit: int = 100) -> tuple[int, int]:
    try:
        limit = int(request.args.get("limit", default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    try:
        offset = int(request.args.get("offset", 0))
    except (TypeError, ValueError):
        offset = 0
    return min(max(1, limit), max_limit), max(0, offset)
