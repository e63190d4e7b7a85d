"""
Phone number helpers.

The provider addresses contacts by international number; stored records use
E.164 (`+<digits>`) and inbound webhooks report bare digits.
"""
from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"[^\d]")


def normalize_e164(value: str) -> str:
    """
    Normalize to `+<digits>`. A leading `00` international prefix is
    rewritten to `+`; input without any digits is returned stripped.
    """
    if not value:
        return value
    trimmed = strip_channel_prefix(value.strip())
    digits = _NON_DIGITS.sub("", trimmed)
    if not digits:
        return trimmed
    if not trimmed.startswith("+") and digits.startswith("00"):
        digits = digits[2:]
    return f"+{digits}"


def strip_channel_prefix(value: str) -> str:
    """Drop a `whatsapp:` address prefix if present."""
    if value and value.lower().startswith("whatsapp:"):
        return value.split(":", 1)[1]
    return value or ""


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")
