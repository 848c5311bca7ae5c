from __future__ import annotations

import re

_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SPACE_RE = re.compile(r"\s+")
_DASH_RE = re.compile(r"-+")


def slugify(text: str | None) -> str:
    """``"  Luxury 3-Bed, East Legon! "`` -> ``"luxury-3-bed-east-legon"``."""
    value = (text or "").strip().lower()
    value = _STRIP_RE.sub("", value)
    value = _SPACE_RE.sub("-", value)
    value = _DASH_RE.sub("-", value)
    return value.strip("-")


def unique_slug(base: str, exists, *, fallback: str = "item") -> str:
    """Append -2, -3, ... until ``exists(candidate)`` is false."""
    root = slugify(base) or fallback
    candidate = root
    n = 2
    while exists(candidate):
        candidate = f"{root}-{n}"
        n += 1
    return candidate
