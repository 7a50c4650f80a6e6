from __future__ import annotations

import asyncio

import pytest

from conftest import NOW, RecordingHardware, RecordingViewers, make_config
from pyupark.admin import encode_override_command, override_fields, parse_desired_state
from pyupark.engine import ParkingEngine
from pyupark.exceptions import UparkConflictError, UparkNotFoundError, UparkValidationError
from pyupark.models.reservation import ReservationStatus
from pyupark.models.slot import SlotState
from pyupark.reservations.lifecycle import OPERATOR
from pyupark.reservations.vehicles import InMemoryVehicleRegistry
from pyupark.state.events import SlotDelta
from pyupark.state.store import InMemorySlotStore, SlotEntry


def test_override_field_sets() -> None:
    assert override_fields(SlotState.AVAILABLE) == {
        "is_occupied": False,
        "is_reserved": False,
        "reserved_by": None,
        "occupant_vehicle": None,
    }
    assert override_fields(SlotState.OCCUPIED)["is_reserved"] is False
    assert encode_override_command(3, SlotState.RESERVED) == "3:RESERVED"
    assert parse_desired_state(" occupied ") is SlotState.OCCUPIED


@pytest.mark.asyncio
async def test_override_pins_slot_against_sensors(engine: ParkingEngine, hardware: RecordingHardware) -> None:
    await engine.override_slot(2, "OCCUPIED")
    await engine.ingest_sensor_payload("1,2,3,4,5,6")

    slot = await engine.get_slot(2)
    assert slot.state is SlotState.OCCUPIED
    # Unpinned neighbours still follow the sensor.
    assert (await engine.get_slot(1)).is_available

    await engine.fanout.flush()
    assert hardware.payloads("admin_slot_override") == ["2:OCCUPIED"]


@pytest.mark.asyncio
async def test_second_override_replaces_first(engine: ParkingEngine) -> None:
    await engine.override_slot(2, "OCCUPIED")
    await engine.override_slot(2, "AVAILABLE")
    await engine.ingest_sensor_payload("1,3,4,5,6")

    # Still pinned, now to AVAILABLE.
    assert (await engine.get_slot(2)).is_available


@pytest.mark.asyncio
async def test_override_cancels_active_reservation(engine: ParkingEngine) -> None:
    reservation = await engine.create_reservation("9990001111", 3, "KA01AB1234", "4W", 2, "HOURLY")

    await engine.override_slot(3, "AVAILABLE")

    slot = await engine.get_slot(3)
    assert slot.is_available and slot.reserved_by is None
    cancelled = await engine.get_reservation(reservation.id)
    assert cancelled.status is ReservationStatus.CANCELLED
    assert cancelled.cancelled_by == OPERATOR
    assert (await engine.get_booking_profile("9990001111")).active_reservations == 0


@pytest.mark.asyncio
async def test_reserved_override_is_operator_hold(engine: ParkingEngine, hardware: RecordingHardware) -> None:
    await engine.override_slot(6, "RESERVED")

    slot = await engine.get_slot(6)
    assert slot.is_reserved and slot.reserved_by is None
    await engine.fanout.flush()
    assert hardware.payloads("reservation_status")[-1] == "6"


@pytest.mark.asyncio
async def test_override_validation(engine: ParkingEngine) -> None:
    with pytest.raises(UparkValidationError):
        await engine.override_slot(2, "BROKEN")
    with pytest.raises(UparkValidationError):
        await engine.override_slot("x", "AVAILABLE")
    with pytest.raises(UparkNotFoundError):
        await engine.override_slot(99, "AVAILABLE")

    assert not (await engine.reconciler.get_entry(2)).pinned


class _YieldingSlotStore(InMemorySlotStore):
    """Slot store that hands control back to the loop on every read."""

    async def get(self, slot_number: int) -> SlotEntry | None:
        await asyncio.sleep(0)
        return await super().get(slot_number)


@pytest.mark.asyncio
@pytest.mark.parametrize("head_start", [0, 3, 6, 9, 12, 15, 18, 24])
@pytest.mark.parametrize("target", ["OCCUPIED", "AVAILABLE"])
async def test_override_racing_booking_keeps_hold_and_booking_in_step(
    vehicles: InMemoryVehicleRegistry,
    hardware: RecordingHardware,
    viewers: RecordingViewers,
    head_start: int,
    target: str,
) -> None:
    async with ParkingEngine(
        make_config(),
        slot_store=_YieldingSlotStore(),
        vehicles=vehicles,
        viewers=viewers,
        hardware=hardware,
        clock=lambda: NOW,
    ) as engine:
        booking = asyncio.create_task(
            engine.create_reservation("9990001111", 1, "KA01AB1234", "4W", 2, "HOURLY")
        )
        for _ in range(head_start):
            await asyncio.sleep(0)
        await engine.override_slot(1, target)
        result = await asyncio.gather(booking, return_exceptions=True)

        slot = await engine.get_slot(1)
        active = await engine.reservations.active_for_slot(1)
        assert slot.is_reserved == (active is not None)
        if active is not None:
            assert slot.reserved_by == active.user_identity
        if target == "OCCUPIED":
            # The override is the last write, so it wins over the booking.
            assert active is None
            assert slot.is_occupied and not slot.is_reserved
        if isinstance(result[0], BaseException):
            assert isinstance(result[0], UparkConflictError)


@pytest.mark.asyncio
async def test_snapshot_guard_rejects_override_after_slot_was_booked(engine: ParkingEngine) -> None:
    await engine.create_reservation("9990001111", 4, "KA01AB1234", "4W", 2, "HOURLY")

    stale = SlotDelta.override(4, override_fields(SlotState.OCCUPIED), expect_reserved=False)
    with pytest.raises(UparkConflictError):
        await engine.reconciler.apply(stale)

    slot = await engine.get_slot(4)
    assert slot.is_reserved and slot.reserved_by == "9990001111"
