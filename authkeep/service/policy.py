"""Input normalization and credential policy shared by the service and API layers."""

from __future__ import annotations

import re
import unicodedata

EMAIL_MAX_LENGTH = 254
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 100

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_NAME_STRIP_CHARS = str.maketrans("", "", "<>&\"'")
# Zero-width and bidi override characters that can be used for spoofing
_INVISIBLE_CHARS = frozenset(
    "\u200b\u200c\u200d\ufeff"
    + "".join(chr(c) for c in range(0x202A, 0x202F))
    + "".join(chr(c) for c in range(0x2066, 0x206A))
)


def _normalize_unicode(value: str) -> str:
    cleaned = "".join(c for c in value if c not in _INVISIBLE_CHARS)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Trim and lower-case an email; applied before every lookup and insert."""
    return _normalize_unicode(value).strip().lower()


def is_valid_email(value: str) -> bool:
    if not value or len(value) > EMAIL_MAX_LENGTH:
        return False
    return bool(_EMAIL_PATTERN.match(value))


def validate_password(value: str) -> str:
    """Return ``value`` unchanged or raise ``ValueError`` naming the first failed rule."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    return value


def is_valid_password(value: str) -> bool:
    try:
        validate_password(value)
    except ValueError:
        return False
    return True


def sanitize_name(value: str) -> str:
    """Strip markup characters and surrounding whitespace, capped at 100 characters."""
    cleaned = _normalize_unicode(value).translate(_NAME_STRIP_CHARS).strip()
    return cleaned[:NAME_MAX_LENGTH]
