from __future__ import annotations

from urllib.parse import urlsplit

TRACKABLE_SCHEMES = frozenset({"http", "https"})


def should_track_url(url: str | None) -> bool:
    """True for http(s) pages; browser-internal and non-web schemes are out of scope."""
    raw = str(url or "").strip()
    if not raw:
        return False
    try:
        parts = urlsplit(raw)
    except Exception:
        return False
    return parts.scheme.lower() in TRACKABLE_SCHEMES and bool(parts.netloc)
