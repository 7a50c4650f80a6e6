from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, FixedGateway, RecordingHardware, make_config
from pyupark.engine import ParkingEngine
from pyupark.exceptions import (
    UparkConflictError,
    UparkForbiddenError,
    UparkNotFoundError,
    UparkTransientStoreError,
    UparkTransitionError,
    UparkValidationError,
)
from pyupark.models.profile import BookingProfile, MembershipLevel
from pyupark.models.reservation import PaymentStatus, Reservation, ReservationStatus
from pyupark.reservations.store import InMemoryReservationStore
from pyupark.reservations.vehicles import InMemoryVehicleRegistry

ALICE = "9990001111"
BOB = "9990002222"


async def _book(engine: ParkingEngine, slot: int = 3, *, phone: str = ALICE, plate: str = "KA01AB1234") -> Reservation:
    return await engine.create_reservation(phone, slot, plate, "4W", 2, "HOURLY")


@pytest.mark.asyncio
async def test_create_reserves_slot(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    slot = await engine.get_slot(3)
    assert slot.is_reserved
    assert slot.reserved_by == ALICE
    assert slot.occupant_vehicle == "KA01AB1234"
    assert reservation.status is ReservationStatus.ACTIVE
    assert reservation.payment_status is PaymentStatus.PENDING
    assert reservation.total_amount == 40
    assert reservation.booking_end == NOW + timedelta(hours=2)


@pytest.mark.asyncio
async def test_create_validates_input(engine: ParkingEngine) -> None:
    with pytest.raises(UparkValidationError):
        await engine.create_reservation("", 3, "KA01AB1234", "4W", 2, "HOURLY")
    with pytest.raises(UparkValidationError):
        await engine.create_reservation(ALICE, 3, "KA01AB1234", "4W", 200, "HOURLY")
    with pytest.raises(UparkValidationError):
        await engine.create_reservation(ALICE, 3, "KA01AB1234", "2W", 2, "HOURLY")
    with pytest.raises(UparkNotFoundError):
        await engine.create_reservation(ALICE, 42, "KA01AB1234", "4W", 2, "HOURLY")

    assert await engine.reconciler.reserved_slot_numbers() == []


@pytest.mark.asyncio
async def test_create_rejects_foreign_vehicle(engine: ParkingEngine) -> None:
    with pytest.raises(UparkNotFoundError):
        await engine.create_reservation(ALICE, 3, "KA02CD5678", "4W", 2, "HOURLY")


@pytest.mark.asyncio
async def test_create_rejects_occupied_slot(engine: ParkingEngine) -> None:
    await engine.ingest_sensor_payload("1,2,4,5,6")

    with pytest.raises(UparkConflictError):
        await _book(engine)


@pytest.mark.asyncio
async def test_create_respects_slot_type(engine: ParkingEngine) -> None:
    await engine.provision(8, "2W")

    with pytest.raises(UparkConflictError):
        await _book(engine, slot=7)
    assert (await engine.get_slot(7)).location == "A7"


@pytest.mark.asyncio
async def test_concurrent_create_single_winner(engine: ParkingEngine) -> None:
    outcomes = await asyncio.gather(
        _book(engine, 4),
        _book(engine, 4, phone=BOB, plate="KA02CD5678"),
        return_exceptions=True,
    )

    winners = [o for o in outcomes if isinstance(o, Reservation)]
    losers = [o for o in outcomes if isinstance(o, UparkConflictError)]
    assert len(winners) == 1 and len(losers) == 1
    assert (await engine.get_slot(4)).reserved_by == winners[0].user_identity
    loser_phone = BOB if winners[0].user_identity == ALICE else ALICE
    assert (await engine.get_booking_profile(loser_phone)).total_reservations == 0


@pytest.mark.asyncio
async def test_one_active_booking_per_user(engine: ParkingEngine) -> None:
    await _book(engine, 3)

    with pytest.raises(UparkConflictError) as excinfo:
        await _book(engine, 4)

    assert excinfo.value.reason == "duplicate_active"
    assert not (await engine.get_slot(4)).is_reserved


@pytest.mark.asyncio
async def test_payment_success_keeps_slot(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    paid = await engine.record_payment(reservation.id, True)

    assert paid.payment_status is PaymentStatus.COMPLETED
    assert paid.status is ReservationStatus.ACTIVE
    assert (await engine.get_slot(3)).is_reserved
    profile = await engine.get_booking_profile(ALICE)
    assert profile.total_amount_spent == 40
    assert profile.loyalty_points == 4
    assert profile.active_reservations == 1


@pytest.mark.asyncio
async def test_payment_failure_releases_slot(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    failed = await engine.record_payment(reservation.id, False)

    assert failed.status is ReservationStatus.CANCELLED
    assert failed.payment_status is PaymentStatus.FAILED
    slot = await engine.get_slot(3)
    assert not slot.is_reserved and slot.reserved_by is None
    assert (await engine.get_booking_profile(ALICE)).active_reservations == 0
    # The user may book again.
    await _book(engine, 4)


@pytest.mark.asyncio
async def test_payment_after_completion_rejected(engine: ParkingEngine) -> None:
    reservation = await _book(engine)
    await engine.record_payment(reservation.id, True)

    with pytest.raises(UparkConflictError):
        await engine.record_payment(reservation.id, True)
    with pytest.raises(UparkConflictError):
        await engine.record_payment(reservation.id, False)


@pytest.mark.asyncio
async def test_process_payment_uses_gateway(engine: ParkingEngine, gateway: FixedGateway) -> None:
    reservation = await _book(engine)

    updated, outcome = await engine.process_payment(reservation.id)

    assert gateway.calls == [(reservation.id, 40)]
    assert outcome.success
    assert updated.payment_id == f"PAY_TEST_{reservation.id}"


@pytest.mark.asyncio
async def test_process_payment_declined(engine: ParkingEngine, gateway: FixedGateway) -> None:
    gateway.success = False
    reservation = await _book(engine)

    updated, outcome = await engine.process_payment(reservation.id)

    assert not outcome.success
    assert updated.status is ReservationStatus.CANCELLED
    assert not (await engine.get_slot(3)).is_reserved


@pytest.mark.asyncio
async def test_concurrent_process_payment_charges_once(engine: ParkingEngine, gateway: FixedGateway) -> None:
    reservation = await _book(engine)

    results = await asyncio.gather(
        engine.process_payment(reservation.id),
        engine.process_payment(reservation.id),
        return_exceptions=True,
    )

    assert gateway.calls == [(reservation.id, 40)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], UparkConflictError)
    paid = await engine.get_reservation(reservation.id)
    assert paid.payment_status is PaymentStatus.COMPLETED
    assert (await engine.get_booking_profile(ALICE)).total_amount_spent == 40


@pytest.mark.asyncio
async def test_process_payment_refuses_cancelled_booking(engine: ParkingEngine, gateway: FixedGateway) -> None:
    reservation = await _book(engine)
    await engine.cancel_reservation(reservation.id, ALICE)

    with pytest.raises(UparkTransitionError):
        await engine.process_payment(reservation.id)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_cancel_refunds_completed_payment(engine: ParkingEngine) -> None:
    reservation = await _book(engine)
    await engine.record_payment(reservation.id, True)

    cancelled = await engine.cancel_reservation(reservation.id, ALICE)

    assert cancelled.status is ReservationStatus.CANCELLED
    assert cancelled.payment_status is PaymentStatus.REFUNDED
    assert (await engine.get_slot(3)).is_available


@pytest.mark.asyncio
async def test_cancel_pending_marks_payment_failed(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    cancelled = await engine.cancel_reservation(reservation.id, ALICE)

    assert cancelled.payment_status is PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_cancel_by_other_user_forbidden(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    with pytest.raises(UparkForbiddenError):
        await engine.cancel_reservation(reservation.id, BOB)

    assert (await engine.get_slot(3)).reserved_by == ALICE


@pytest.mark.asyncio
async def test_cancel_twice_rejected(engine: ParkingEngine) -> None:
    reservation = await _book(engine)
    await engine.cancel_reservation(reservation.id, ALICE)

    with pytest.raises(UparkTransitionError):
        await engine.cancel_reservation(reservation.id, ALICE)


@pytest.mark.asyncio
async def test_unknown_reservation(engine: ParkingEngine) -> None:
    with pytest.raises(UparkNotFoundError):
        await engine.cancel_reservation(99, ALICE)
    with pytest.raises(UparkValidationError):
        await engine.get_reservation("abc")


@pytest.mark.asyncio
async def test_expire_due_releases_slot(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    assert await engine.expire_due(now=NOW + timedelta(hours=1)) == []
    expired = await engine.expire_due(now=NOW + timedelta(hours=2))

    assert [r.id for r in expired] == [reservation.id]
    assert expired[0].status is ReservationStatus.EXPIRED
    assert (await engine.get_slot(3)).is_available
    assert (await engine.get_booking_profile(ALICE)).active_reservations == 0


@pytest.mark.asyncio
async def test_expire_before_end_rejected(engine: ParkingEngine) -> None:
    reservation = await _book(engine)

    with pytest.raises(UparkConflictError):
        await engine.expire_reservation(reservation.id, now=NOW)


@pytest.mark.asyncio
async def test_reservation_history_newest_first(engine: ParkingEngine) -> None:
    first = await _book(engine, 3)
    await engine.cancel_reservation(first.id, ALICE)
    second = await _book(engine, 4)

    history = await engine.list_reservations(ALICE)

    assert [r.id for r in history] == [second.id, first.id]
    assert await engine.get_reservation(first.id) == history[1]


@pytest.mark.asyncio
async def test_profile_defaults_for_new_user(engine: ParkingEngine) -> None:
    profile = await engine.get_booking_profile("0000000000")

    assert profile == BookingProfile(user_identity="0000000000")
    assert profile.membership_level is MembershipLevel.BRONZE


class _FailingCommitStore(InMemoryReservationStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def commit(self, reservation: Reservation, profile: BookingProfile | None = None) -> None:
        if self.fail:
            raise UparkTransientStoreError("ledger offline")
        await super().commit(reservation, profile)


@pytest.mark.asyncio
async def test_failed_commit_releases_slot(
    vehicles: InMemoryVehicleRegistry, hardware: RecordingHardware
) -> None:
    store = _FailingCommitStore()
    store.fail = True
    async with ParkingEngine(make_config(), reservation_store=store, vehicles=vehicles, hardware=hardware) as engine:
        with pytest.raises(UparkTransientStoreError):
            await _book(engine)

        assert (await engine.get_slot(3)).is_available


@pytest.mark.asyncio
async def test_failed_transition_commit_restores_hold(
    vehicles: InMemoryVehicleRegistry, hardware: RecordingHardware
) -> None:
    store = _FailingCommitStore()
    async with ParkingEngine(make_config(), reservation_store=store, vehicles=vehicles, hardware=hardware) as engine:
        reservation = await _book(engine)
        store.fail = True

        with pytest.raises(UparkTransientStoreError):
            await engine.cancel_reservation(reservation.id, ALICE)

        assert (await engine.get_slot(3)).reserved_by == ALICE
        assert (await engine.get_reservation(reservation.id)).status is ReservationStatus.ACTIVE
