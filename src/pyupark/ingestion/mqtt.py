"""Hardware topic routing.

Maps inbound bus topics onto the kind of message they carry, so the
engine can dispatch without knowing the topic layout.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pyupark._constants import TOPIC_DEVICE_STATUS, TOPIC_GATE_STATUS, TOPIC_SLOT_STATUS


class HardwareMessageKind(StrEnum):
    SLOT_STATUS = "slot_status"
    DEVICE_STATUS = "device_status"
    GATE_STATUS = "gate_status"
    UNKNOWN = "unknown"


_SUFFIX_KINDS: dict[str, HardwareMessageKind] = {
    TOPIC_SLOT_STATUS: HardwareMessageKind.SLOT_STATUS,
    TOPIC_DEVICE_STATUS: HardwareMessageKind.DEVICE_STATUS,
    TOPIC_GATE_STATUS: HardwareMessageKind.GATE_STATUS,
}

INBOUND_SUFFIXES: tuple[str, ...] = tuple(_SUFFIX_KINDS)


@dataclass(frozen=True)
class HardwareMessage:
    """One inbound bus message."""

    kind: HardwareMessageKind
    topic: str
    payload: bytes


def classify_topic(topic: str, prefix: str) -> HardwareMessageKind:
    if not topic.startswith(prefix):
        return HardwareMessageKind.UNKNOWN
    return _SUFFIX_KINDS.get(topic[len(prefix) :], HardwareMessageKind.UNKNOWN)


def build_hardware_message(topic: str, payload: str | bytes, prefix: str) -> HardwareMessage:
    raw = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    return HardwareMessage(kind=classify_topic(topic, prefix), topic=topic, payload=raw)
