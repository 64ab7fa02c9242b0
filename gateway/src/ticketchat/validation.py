from __future__ import annotations

import re

from .errors import ValidationError


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_valid_address(value: object) -> bool:
    return isinstance(value, str) and _ADDRESS_RE.match(value) is not None


def is_valid_uuid(value: object) -> bool:
    return isinstance(value, str) and _UUID_RE.match(value) is not None


def normalize_address(value: str) -> str:
    return value.lower()


def require_address(value: object, message: str = "Invalid user_address format") -> str:
    """Return the canonical lower-cased wallet or raise ``ValidationError``."""

    if not is_valid_address(value):
        raise ValidationError(message)
    return normalize_address(value)  # type: ignore[arg-type]


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"
