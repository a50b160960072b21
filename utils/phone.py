"""Phone number helpers shared by intake and the HTTP layer."""
from __future__ import annotations

import re
from typing import Optional

_NON_DIGITS = re.compile(r"[^\d]")


def normalize_phone(raw: str, country_code: str = "91") -> Optional[str]:
    """
    Normalize a phone number to canonical digits with country code.

    10 digits get the country code prepended; 12 digits already starting with
    it are returned as-is. Anything else is rejected with None.
    """
    if not raw or not raw.strip():
        return None
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 10:
        return country_code + digits
    if len(digits) == 10 + len(country_code) and digits.startswith(country_code):
        return digits
    return None


def split_phone_batch(raw: str) -> list[str]:
    """Split "9876543210, 9876543211" into trimmed, non-empty entries."""
    return [part.strip() for part in (raw or "").split(",") if part.strip()]
