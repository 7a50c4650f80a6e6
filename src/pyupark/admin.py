"""Admin override handler.

Lets an operator force a slot's visible state. The override pins the
slot against sensor input until the next reservation or admin event
touches it; it does not lock the slot against later bookings.
"""

from __future__ import annotations

import logging
from typing import Any

from pyupark._constants import TOPIC_ADMIN_SLOT_OVERRIDE
from pyupark.exceptions import UparkConflictError, UparkValidationError
from pyupark.ingestion.normalize import positive_int
from pyupark.models.slot import Slot, SlotChange, SlotState
from pyupark.notify import NotificationFanout
from pyupark.reservations.lifecycle import ReservationManager
from pyupark.state.events import SlotDelta
from pyupark.state.reconciler import SlotReconciler

_logger = logging.getLogger(__name__)

_OVERRIDE_ATTEMPTS = 5

_FIELDS: dict[SlotState, dict[str, Any]] = {
    SlotState.AVAILABLE: {
        "is_occupied": False,
        "is_reserved": False,
        "reserved_by": None,
        "occupant_vehicle": None,
    },
    SlotState.RESERVED: {"is_occupied": False, "is_reserved": True},
    SlotState.OCCUPIED: {"is_occupied": True, "is_reserved": False, "reserved_by": None},
}


def parse_desired_state(value: Any) -> SlotState:
    try:
        return SlotState(str(value or "").strip().upper())
    except ValueError as exc:
        raise UparkValidationError(f"Unknown slot state {value!r}", field="desired_state") from exc


def override_fields(state: SlotState) -> dict[str, Any]:
    """Concrete field-set forced by an override to *state*."""
    return dict(_FIELDS[state])


def encode_override_command(slot_number: int, state: SlotState) -> str:
    return f"{slot_number}:{state.value}"


class AdminOverrideHandler:
    def __init__(
        self,
        reconciler: SlotReconciler,
        reservations: ReservationManager,
        fanout: NotificationFanout,
    ) -> None:
        self._reconciler = reconciler
        self._reservations = reservations
        self._fanout = fanout

    async def override(self, slot_number: Any, desired_state: Any) -> SlotChange | None:
        """Force *slot_number* into *desired_state*.

        An active booking on the slot is cancelled when the operator moves
        the slot out of RESERVED. The write carries a snapshot guard on the
        slot's reservation link; a booking that lands between the read and
        the write makes the handler start over.

        Raises
        ------
        UparkValidationError
            Unknown state or invalid slot number; nothing changes.
        UparkNotFoundError
            The slot does not exist; nothing changes.
        UparkConflictError
            The slot kept changing under the override; nothing changes.
        """
        slot = positive_int(slot_number)
        if slot is None:
            raise UparkValidationError(f"Invalid slot number {slot_number!r}", field="slot_number")
        state = parse_desired_state(desired_state)
        before = await self._reconciler.get_slot(slot)

        _logger.info("Admin override slot %s -> %s", slot, state.value)

        change = await self._apply_override(slot, state)
        after = await self._reconciler.get_slot(slot)

        self._fanout.enqueue_hardware(TOPIC_ADMIN_SLOT_OVERRIDE, encode_override_command(slot, state))
        if before.is_reserved != after.is_reserved:
            self._fanout.request_reserved_sync(force=True)
        return change

    async def _apply_override(self, slot: int, state: SlotState) -> SlotChange | None:
        fields = override_fields(state)
        for _ in range(_OVERRIDE_ATTEMPTS):
            current = await self._reconciler.get_slot(slot)
            holder = current.reserved_by
            try:
                if state is SlotState.RESERVED or holder is None:
                    return await self._write(slot, fields, current)
                # The holder's lock settles a booking that reserved the slot but has not committed yet.
                async with self._reservations.holder_lock(holder):
                    cancelled = await self._reservations.cancel_for_operator(slot, holder)
                    if cancelled is not None:
                        _logger.info("Reservation %s cancelled by operator override", cancelled.id)
                    current = await self._reconciler.get_slot(slot)
                    if current.reserved_by not in (None, holder):
                        continue
                    return await self._write(slot, fields, current)
            except UparkConflictError:
                _logger.debug("Slot %s changed during override; retrying", slot)
        raise UparkConflictError(f"Slot {slot} kept changing during override", reason="override_contended")

    async def _write(self, slot: int, fields: dict[str, Any], current: Slot) -> SlotChange | None:
        return await self._reconciler.apply(
            SlotDelta.override(
                slot,
                fields,
                expect_reserved=current.is_reserved,
                expect_reserved_by=current.reserved_by,
            )
        )
