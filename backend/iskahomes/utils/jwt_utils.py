import os
import time
import logging
from typing import Optional, Dict, Any, Tuple

import jwt

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 30


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def _ttl_seconds() -> int:
    raw = (os.getenv("ACCESS_TOKEN_TTL_SECONDS") or "").strip()
    if raw:
        try:
            parsed = int(raw)
            if parsed > 0:
                return parsed
        except Exception:
            pass
    return DEFAULT_TTL_SECONDS


def create_access_token(user_id: int, user_type: str = "property_seeker", ttl_seconds: int | None = None) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "user_type": (user_type or "property_seeker"),
        "iat": now,
        "exp": now + int(ttl_seconds or _ttl_seconds()),
        "type": "access",
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def create_token(user_id: int, user_type: str = "property_seeker", ttl_seconds: int | None = None) -> str:
    return create_access_token(user_id=user_id, user_type=user_type, ttl_seconds=ttl_seconds)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.info("token_expired")
        return None
    except jwt.InvalidTokenError:
        return None


def parse_auth_header(auth_header: str) -> Tuple[Optional[str], Optional[str]]:
    if not auth_header:
        return None, None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1], "bearer"
    if len(parts) == 2 and parts[0].lower() == "token":
        logger.warning("Deprecated auth scheme Token used")
        return parts[1], "token"
    return None, None


def get_bearer_token(auth_header: str) -> Optional[str]:
    if not auth_header:
        return None
    token, _scheme = parse_auth_header(auth_header)
    return token
