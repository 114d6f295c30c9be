"""
Email/phone normalization used before every identity lookup.
"""

from __future__ import annotations

import re

_E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")
_EXTENSION_REGEX = re.compile(r"\s*(x|ext|extension|#)\s*\d+.*$", re.IGNORECASE)


def normalize_email(value: object | None) -> str | None:
    """
    Normalize email for identity matching.

    - Lower-case entire address
    - Trim whitespace
    - Reject tokens without an ``@``
    """

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or "@" not in token:
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """
    Normalize phone numbers to strict E.164 (+<country><number>) format.

    Ten-digit numbers without a country code are assumed to be +1. Extensions
    are stripped. Returns ``None`` when the value cannot be normalized.
    """

    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None

    token = _EXTENSION_REGEX.sub("", token).strip()
    if not token:
        return None

    for char in (" ", "-", "(", ")", "."):
        token = token.replace(char, "")

    if token.startswith("00"):
        token = f"+{token[2:]}"

    digits_only = "".join(c for c in token if c.isdigit())

    if not token.startswith("+"):
        if len(digits_only) == 10:
            normalized = f"+1{digits_only}"
        elif len(digits_only) == 11 and digits_only.startswith("1"):
            normalized = f"+{digits_only}"
        else:
            return None
    else:
        normalized = f"+{digits_only}"

    if _E164_REGEX.match(normalized):
        return normalized
    return None


def normalize_tags(values: object | None) -> tuple[str, ...]:
    """Return trimmed, de-duplicated, sorted tag names."""

    if values is None:
        return ()
    if isinstance(values, str):
        candidates = values.split(",")
    else:
        candidates = []
        for item in values:  # type: ignore[union-attr]
            if isinstance(item, dict):
                item = item.get("name")
            if item is not None:
                candidates.append(item)
    return tuple(sorted({str(tag).strip() for tag in candidates if str(tag).strip()}))


def clean_text(value: object | None) -> str | None:
    if value is None:
        return None
    token = " ".join(str(value).split())
    return token or None
