"""Gate and device status decoding.

Gate status arrives either labelled (``ENTRY:OPEN``, ``EXIT:CLOSED``) or
as a bare legacy status that refers to the entry gate.
"""

from __future__ import annotations

from enum import StrEnum

from pyupark._constants import (
    DEVICE_ONLINE,
    EVENT_ENTRY_GATE_UPDATE,
    EVENT_EXIT_GATE_UPDATE,
    EVENT_GATE_UPDATE,
)
from pyupark.exceptions import UparkMalformedSignalError, UparkValidationError
from pyupark.ingestion.normalize import decode_text


class Gate(StrEnum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    LEGACY = "LEGACY"


class GateAction(StrEnum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"


def _text(payload: str | bytes | bytearray) -> str:
    try:
        return decode_text(payload)
    except UnicodeDecodeError as exc:
        raise UparkMalformedSignalError("Status payload is not UTF-8 text") from exc


def decode_gate_status(payload: str | bytes | bytearray) -> list[tuple[str, str]]:
    """Viewer events ``(event, status)`` for one gate status message."""
    text = _text(payload)
    if not text:
        raise UparkMalformedSignalError("Empty gate status")

    label, sep, status = text.partition(":")
    label = label.strip().upper()
    status = status.strip() if sep else text
    if sep and label == Gate.ENTRY:
        # Viewers that only know one gate treat it as the entry gate.
        return [(EVENT_ENTRY_GATE_UPDATE, status or text), (EVENT_GATE_UPDATE, status or text)]
    if sep and label == Gate.EXIT:
        return [(EVENT_EXIT_GATE_UPDATE, status or text)]
    return [(EVENT_GATE_UPDATE, text)]


def decode_device_status(payload: str | bytes | bytearray) -> tuple[str, bool]:
    """Return ``(status, is_online)``."""
    text = _text(payload)
    if not text:
        raise UparkMalformedSignalError("Empty device status")
    return text, text.upper() == DEVICE_ONLINE


def parse_gate_command(gate: str | Gate, action: str | GateAction) -> tuple[Gate, GateAction]:
    try:
        parsed_gate = Gate(str(gate).strip().upper())
    except ValueError as exc:
        raise UparkValidationError(f"Unknown gate {gate!r}", field="gate") from exc
    try:
        parsed_action = GateAction(str(action or "").strip().upper())
    except ValueError as exc:
        raise UparkValidationError(f"Unknown gate action {action!r}", field="action") from exc
    return parsed_gate, parsed_action
