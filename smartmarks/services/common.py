from __future__ import annotations

RECOGNIZED_SCHEMES = ("http://", "https://")
DEFAULT_SCHEME = "https://"


def clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_target(url: str) -> str:
    target = clean_text(url)
    if not target:
        return ""
    if target.lower().startswith(RECOGNIZED_SCHEMES):
        return target
    return DEFAULT_SCHEME + target
