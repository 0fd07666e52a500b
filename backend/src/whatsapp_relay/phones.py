from __future__ import annotations

import re

# ASCII digits only; other Unicode digits are not dialable.
_NON_PHONE_CHARS = re.compile(r"[^0-9+]")


def normalize_phone_number(value: str) -> str:
    """Keep digits and a single leading ``+``."""
    stripped = _NON_PHONE_CHARS.sub("", value.strip())
    digits = stripped.replace("+", "")
    if stripped.startswith("+"):
        return f"+{digits}"
    return digits


def conversation_id_for(phone_number: str) -> str:
    normalized = normalize_phone_number(phone_number)
    if not normalized.lstrip("+"):
        raise ValueError("phone number must contain digits")
    return normalized if normalized.startswith("+") else f"+{normalized}"
