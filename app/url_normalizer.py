from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Ad-click ids, UTM fields and ad-platform targeting params. Matched case-insensitively.
TRACKING_PARAMS: frozenset[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_content",
        "utm_term",
        "utm_adgroup",
        "utm_id",
        "gclid",
        "wbraid",
        "gbraid",
        "gclsrc",
        "dclid",
        "fbclid",
        "ttclid",
        "msclkid",
        "yclid",
        "matchtype",
        "network",
        "device",
        "placement",
        "adposition",
        "keyword",
        "creative",
        "targetid",
        "campaignid",
        "adgroupid",
        "loc_physical_ms",
        "loc_interest_ms",
    }
)

CLICK_ID_PARAMS: tuple[str, ...] = ("gclid", "wbraid", "gbraid")


def _naive_truncate(raw: str) -> str:
    for sep in ("#", "?"):
        idx = raw.find(sep)
        if idx >= 0:
            raw = raw[:idx]
    return raw


def _split(raw: str):
    parts = urlsplit(raw)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"not an absolute url: {raw[:80]}")
    # Accessing port validates it.
    _ = parts.port
    return parts


def normalize_landing_url(url: str | None) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        parts = _split(raw)
    except ValueError:
        return _naive_truncate(raw)
    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, urlencode(kept), ""))


def extract_click_id(url: str | None, meta: dict[str, object] | None = None) -> str | None:
    """Return the first ad click id found in the raw URL query or in client metadata."""
    raw = (url or "").strip()
    params: dict[str, str] = {}
    if raw:
        try:
            parts = _split(raw)
        except ValueError:
            parts = None
        if parts is not None:
            for key, value in parse_qsl(parts.query, keep_blank_values=False):
                params.setdefault(key.lower(), value)
    meta = meta or {}
    for name in CLICK_ID_PARAMS:
        value = params.get(name) or meta.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
