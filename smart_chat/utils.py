"""Internal utility helpers."""
from __future__ import annotations

import re
from typing import Any

_MISSING = object()

_EMOJI_PATTERN = re.compile(
    "["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F1E0-\U0001F1FF"  # flags
    "\u2600-\u26FF"  # misc symbols
    "\u2700-\u27BF"  # dingbats
    "\U0001F900-\U0001F9FF"
    "\U0001FA00-\U0001FA6F"
    "\U0001FA70-\U0001FAFF"
    "\uFE00-\uFE0F"  # variation selectors
    "\U0001F004\U0001F0CF"
    "]"
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Get attribute or dict value while preserving falsy values."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    attr_val = getattr(obj, key, _MISSING)
    if attr_val is not _MISSING:
        return attr_val
    return default


def strip_emoji(text: str) -> str:
    """Remove pictographic emoji from text."""
    if not text:
        return text
    return _EMOJI_PATTERN.sub("", text)


__all__ = ["_get", "strip_emoji"]
