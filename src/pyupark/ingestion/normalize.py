"""Normalization helpers.

Centralizes tolerant parsing of hardware tokens and caller input.
"""

from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    """Parse a whole number; fractional or non-numeric input yields ``None``."""
    if isinstance(value, str):
        value = value.strip()
    parsed = safe_float(value)
    if parsed is None or not parsed.is_integer():
        return None
    return int(parsed)


def positive_int(value: Any) -> int | None:
    parsed = safe_int(value)
    if parsed is None or parsed <= 0:
        return None
    return parsed


def safe_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def decode_text(payload: str | bytes | bytearray) -> str:
    """Decode a bus payload to stripped text.

    Raises :class:`UnicodeDecodeError` for bytes that are not UTF-8.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8").strip()
    return payload.strip()
