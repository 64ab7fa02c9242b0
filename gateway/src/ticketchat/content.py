from __future__ import annotations

import re

from .errors import ValidationError


MAX_CONTENT_LEN = 500

_ANGLE_BRACKETS_RE = re.compile(r"[<>]")
# TAB, LF and CR survive so multi-line messages keep their shape.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize(raw: str) -> str:
    """Delete risky characters from ``raw`` and trim surrounding whitespace.

    This is not HTML escaping: clients still escape on display.
    """

    without_brackets = _ANGLE_BRACKETS_RE.sub("", raw)
    return _CONTROL_CHARS_RE.sub("", without_brackets).strip()


def clean_content(raw: object, *, max_len: int = MAX_CONTENT_LEN) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("content is required")
    cleaned = sanitize(raw)
    if not cleaned:
        raise ValidationError("Message content is empty after sanitization")
    if len(cleaned) > max_len:
        raise ValidationError(f"Message must be {max_len} characters or less")
    return cleaned
