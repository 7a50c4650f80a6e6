"""Sensor sweep ingestion.

A sweep is either the full-lot marker or a comma-separated list of the
slot numbers that are currently free. Every known slot missing from the
list is physically occupied.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from pyupark._constants import FULL_MARKERS
from pyupark.exceptions import UparkMalformedSignalError
from pyupark.ingestion.normalize import decode_text, positive_int
from pyupark.state.events import SlotDelta

_logger = logging.getLogger(__name__)

MAX_PAYLOAD_LENGTH = 4096


@dataclass(frozen=True)
class SensorReading:
    """Decoded sensor sweep."""

    free: frozenset[int]
    full: bool
    discarded: tuple[str, ...] = ()

    def occupancy(self, known_slots: Iterable[int]) -> dict[int, bool]:
        """Occupancy judgment for every known slot (``True`` = occupied)."""
        return {slot: slot not in self.free for slot in known_slots}


def is_full_marker(text: str) -> bool:
    return " ".join(text.split()).upper() in FULL_MARKERS


def decode_sensor_payload(payload: str | bytes | bytearray) -> SensorReading:
    """Decode a raw sensor payload.

    Unparseable tokens are discarded rather than failing the sweep; a
    payload with no valid slot numbers is an empty free-set.

    Raises
    ------
    UparkMalformedSignalError
        The payload is not text or is implausibly large.
    """
    try:
        text = decode_text(payload)
    except UnicodeDecodeError as exc:
        raise UparkMalformedSignalError("Sensor payload is not UTF-8 text") from exc
    if len(text) > MAX_PAYLOAD_LENGTH:
        raise UparkMalformedSignalError(
            f"Sensor payload too long ({len(text)} chars)",
            payload=text[:64],
        )

    if is_full_marker(text):
        return SensorReading(free=frozenset(), full=True)

    free: set[int] = set()
    discarded: list[str] = []
    for token in text.split(","):
        stripped = token.strip()
        if not stripped:
            continue
        slot = positive_int(stripped)
        if slot is None:
            discarded.append(stripped)
            continue
        free.add(slot)

    if discarded:
        _logger.debug("Discarded sensor tokens %s", discarded)
    return SensorReading(free=frozenset(free), full=False, discarded=tuple(discarded))


def build_occupancy_deltas(reading: SensorReading, known_slots: Iterable[int]) -> list[SlotDelta]:
    """One hardware delta per known slot.

    Free slot numbers that do not exist are ignored.
    """
    known = list(known_slots)
    unknown = sorted(reading.free.difference(known))
    if unknown:
        _logger.debug("Sensor reported unknown free slots %s", unknown)
    return [SlotDelta.occupancy(slot, occupied) for slot, occupied in reading.occupancy(known).items()]
