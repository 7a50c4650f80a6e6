"""Reservation lifecycle manager.

Owns the reservation/payment state machine and is the only component
that sets a slot's reserved flag. Every slot effect is expressed as a
:class:`pyupark.state.events.SlotDelta` and routed through the
reconciler; the manager never writes slot records itself.

Serialization points:

* per user: the "no other active booking" check and the insert run under
  one lock, and so do all later transitions of that user's bookings;
* per slot: the reserve delta is a compare-and-set in the reconciler, so
  two users racing for one free slot cannot both win.
* admin override: the operator handler takes the holder's lock before
  cancelling, so it never clears a hold whose booking is still committing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pyupark._redact import mask_phone
from pyupark.exceptions import (
    UparkConflictError,
    UparkForbiddenError,
    UparkNotFoundError,
    UparkTransientStoreError,
    UparkValidationError,
)
from pyupark.ingestion.normalize import positive_int, safe_text
from pyupark.models._base import ensure_aware, utcnow
from pyupark.models.profile import BookingProfile
from pyupark.models.reservation import (
    PaymentStatus,
    Reservation,
    ReservationStatus,
    ReservationTransition,
    next_state,
)
from pyupark.models.slot import SlotType
from pyupark.reservations.payments import PaymentGateway, PaymentOutcome, charge_bounded
from pyupark.reservations.pricing import (
    calculate_fee,
    parse_duration,
    parse_duration_unit,
    parse_vehicle_type,
)
from pyupark.reservations.store import ReservationStore
from pyupark.reservations.vehicles import VehicleRegistry
from pyupark.state.events import SlotDelta
from pyupark.state.reconciler import SlotReconciler

_logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATOR = "operator"

_BLOCKING_PAYMENT_STATES = frozenset({PaymentStatus.PENDING, PaymentStatus.COMPLETED})


class ReservationManager:
    """Reservation state machine.

    Parameters
    ----------
    reconciler
        Slot reconciler every slot effect goes through.
    store
        Reservation ledger.
    vehicles
        Plate ownership lookup.
    gateway
        Payment gateway used by :meth:`process_payment`.
    clock
        Returns the current aware datetime; injectable for tests.
    store_timeout
        Upper bound in seconds for each ledger call.
    payment_timeout
        Upper bound in seconds for a gateway charge.
    """

    def __init__(
        self,
        reconciler: SlotReconciler,
        store: ReservationStore,
        vehicles: VehicleRegistry,
        *,
        gateway: PaymentGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
        store_timeout: float = 5.0,
        payment_timeout: float = 10.0,
    ) -> None:
        self._reconciler = reconciler
        self._store = store
        self._vehicles = vehicles
        self._gateway = gateway
        self._clock = clock
        self._store_timeout = store_timeout
        self._payment_timeout = payment_timeout
        self._user_locks: dict[str, asyncio.Lock] = {}

    def _user_lock(self, user_identity: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_identity)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_identity] = lock
        return lock

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._store_timeout)
        except TimeoutError as exc:
            raise UparkTransientStoreError(f"Reservation store timed out after {self._store_timeout}s") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, reservation_id: Any) -> Reservation:
        rid = positive_int(reservation_id)
        if rid is None:
            raise UparkValidationError("Reservation ID is required", field="reservation_id")
        reservation = await self._bounded(self._store.get(rid))
        if reservation is None:
            raise UparkNotFoundError("Reservation not found", entity="reservation", key=rid)
        return reservation

    async def list_for_user(self, user_identity: str) -> list[Reservation]:
        """User's reservations, newest first."""
        return await self._bounded(self._store.list_for_user(user_identity.strip()))

    async def active_for_slot(self, slot_number: int) -> Reservation | None:
        for reservation in await self._bounded(self._store.list_active()):
            if reservation.slot_number == slot_number:
                return reservation
        return None

    async def get_profile(self, user_identity: str) -> BookingProfile:
        """Booking profile; users without bookings get an empty BRONZE profile."""
        identity = user_identity.strip()
        profile = await self._bounded(self._store.get_profile(identity))
        return profile if profile is not None else BookingProfile(user_identity=identity)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        phone: Any,
        slot_number: Any,
        vehicle_plate: Any,
        vehicle_type: Any,
        duration: Any,
        duration_unit: Any,
        start_time: datetime | None = None,
    ) -> Reservation:
        """Book a free slot.

        Raises
        ------
        UparkValidationError
            Missing field, unknown vehicle class/duration unit, duration
            outside 1h..7 days, or vehicle class not matching the plate.
        UparkNotFoundError
            Unknown slot, or plate not registered to *phone*.
        UparkConflictError
            Slot occupied/reserved, slot type mismatch, or the user already
            holds an active booking.
        """
        user = safe_text(phone)
        plate = safe_text(vehicle_plate)
        slot = positive_int(slot_number)
        if user is None or plate is None or slot is None:
            raise UparkValidationError("All fields are required", field="phone/slot_number/vehicle_plate")
        vtype = parse_vehicle_type(vehicle_type)
        unit = parse_duration_unit(duration_unit)
        hours = parse_duration(duration)
        amount = calculate_fee(vtype, hours, unit)

        current = await self._reconciler.get_slot(slot)
        if not current.is_available:
            raise UparkConflictError("Slot is not available", reason="slot_unavailable")
        if current.slot_type is not SlotType.BOTH and current.slot_type.value != vtype.value:
            raise UparkConflictError(
                f"Slot {slot} only accepts {current.slot_type.value} vehicles",
                reason="slot_type",
            )

        vehicle = await self._vehicles.get_vehicle(plate)
        if vehicle is None or vehicle.owner_identity != user:
            raise UparkNotFoundError("Vehicle not found or not owned by user", entity="vehicle", key=plate)
        if vehicle.vehicle_type is not vtype:
            raise UparkValidationError(
                f"Vehicle {plate} is registered as {vehicle.vehicle_type.value}",
                field="vehicle_type",
            )

        now = self._clock()
        start = ensure_aware(start_time) if start_time is not None else now

        async with self._user_lock(user):
            existing = [
                row
                for row in await self._bounded(self._store.list_for_user(user))
                if row.status is ReservationStatus.ACTIVE and row.payment_status in _BLOCKING_PAYMENT_STATES
            ]
            if existing:
                raise UparkConflictError("You already have an active reservation", reason="duplicate_active")

            reservation = Reservation(
                id=await self._bounded(self._store.next_id()),
                slot_number=slot,
                user_identity=user,
                vehicle_plate=plate,
                vehicle_type=vtype,
                booking_start=start,
                duration_value=hours,
                duration_unit=unit,
                booking_end=Reservation.end_for(start, hours),
                total_amount=amount,
                created_at=now,
                updated_at=now,
            )
            profile = (await self.get_profile(user)).record_created(
                vehicle_type=vtype,
                duration_unit=unit,
                at=now,
            )

            # Compare-and-set on the slot; raises UparkConflictError if someone got there first.
            await self._reconciler.apply(SlotDelta.reserve(slot, user_identity=user, vehicle_plate=plate))
            try:
                await self._bounded(self._store.commit(reservation, profile))
            except Exception:
                await self._compensate_release(slot, user)
                raise

        _logger.info(
            "Reservation %s created slot=%s user=%s amount=%s",
            reservation.id,
            slot,
            mask_phone(user),
            amount,
        )
        return reservation

    async def _compensate_release(self, slot_number: int, user_identity: str) -> None:
        try:
            await self._reconciler.apply(SlotDelta.release(slot_number, user_identity=user_identity))
        except Exception:
            _logger.error(
                "Could not release slot %s after failed reservation commit",
                slot_number,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        reservation_id: Any,
        transition: ReservationTransition,
        *,
        check: Callable[[Reservation], None] | None = None,
        payment_id: str | None = None,
        cancelled_by: str | None = None,
    ) -> Reservation:
        """Apply *transition* under the owner's lock."""
        reservation = await self.get(reservation_id)
        async with self._user_lock(reservation.user_identity):
            return await self._transition_locked(
                reservation.id,
                transition,
                check=check,
                payment_id=payment_id,
                cancelled_by=cancelled_by,
            )

    async def _transition_locked(
        self,
        reservation_id: int,
        transition: ReservationTransition,
        *,
        check: Callable[[Reservation], None] | None = None,
        payment_id: str | None = None,
        cancelled_by: str | None = None,
    ) -> Reservation:
        """Transition body; the caller holds the owner's lock.

        Releases the slot when the booking stops holding it.
        """
        # Re-read under the lock; another transition may have won.
        reservation = await self.get(reservation_id)
        if check is not None:
            check(reservation)

        now = self._clock()
        updated = reservation.transition(
            transition,
            now=now,
            payment_id=payment_id,
            cancelled_by=cancelled_by,
        )

        profile = await self.get_profile(updated.user_identity)
        if transition is ReservationTransition.PAYMENT_SUCCESS:
            profile = profile.record_paid(updated.total_amount)
        released = reservation.holds_slot and not updated.holds_slot
        if released:
            profile = profile.record_released()
            await self._reconciler.apply(SlotDelta.release(updated.slot_number, user_identity=updated.user_identity))
        try:
            await self._bounded(self._store.commit(updated, profile))
        except Exception:
            if released:
                await self._compensate_hold(reservation)
            raise

        _logger.info(
            "Reservation %s %s -> %s/%s",
            updated.id,
            transition.value,
            updated.status.value,
            updated.payment_status.value,
        )
        return updated

    async def _compensate_hold(self, reservation: Reservation) -> None:
        try:
            await self._reconciler.apply(
                SlotDelta.reserve(
                    reservation.slot_number,
                    user_identity=reservation.user_identity,
                    vehicle_plate=reservation.vehicle_plate,
                )
            )
        except Exception:
            _logger.error(
                "Could not restore hold on slot %s for reservation %s",
                reservation.slot_number,
                reservation.id,
                exc_info=True,
            )

    async def record_payment(self, reservation_id: Any, outcome: PaymentOutcome | bool) -> Reservation:
        """Record a payment result.

        Success keeps the booking and its slot; failure cancels the booking
        and releases the slot.

        Raises
        ------
        UparkTransitionError
            Payment already completed, or the booking is no longer active.
        """
        if isinstance(outcome, bool):
            outcome = PaymentOutcome(success=outcome)
        transition, payment_id = _payment_transition(outcome)
        return await self._transition(reservation_id, transition, check=_require_unpaid, payment_id=payment_id)

    async def process_payment(self, reservation_id: Any) -> tuple[Reservation, PaymentOutcome]:
        """Charge the gateway for the booking amount and record the outcome.

        The charge runs under the owner's lock, so one booking is never
        charged twice. Gateway errors raise
        :class:`pyupark.exceptions.UparkPaymentError` and leave the booking
        untouched.
        """
        if self._gateway is None:
            raise UparkValidationError("No payment gateway configured", field="gateway")
        reservation = await self.get(reservation_id)
        async with self._user_lock(reservation.user_identity):
            reservation = await self.get(reservation.id)
            _require_unpaid(reservation)
            # Refuse to charge a booking that could not record the payment.
            next_state(ReservationTransition.PAYMENT_SUCCESS, reservation.status, reservation.payment_status)
            outcome = await charge_bounded(
                self._gateway,
                reservation_id=reservation.id,
                amount=reservation.total_amount,
                timeout=self._payment_timeout,
            )
            transition, payment_id = _payment_transition(outcome)
            updated = await self._transition_locked(
                reservation.id,
                transition,
                check=_require_unpaid,
                payment_id=payment_id,
            )
        return updated, outcome

    async def cancel(self, reservation_id: Any, phone: Any) -> Reservation:
        """Owner cancellation; refunds a completed payment.

        Raises
        ------
        UparkNotFoundError
            Unknown reservation.
        UparkForbiddenError
            *phone* does not own the reservation.
        UparkTransitionError
            The reservation is no longer active.
        """
        requester = safe_text(phone)
        if requester is None:
            raise UparkValidationError("Reservation ID and user phone are required", field="phone")

        def _owned(reservation: Reservation) -> None:
            if reservation.user_identity != requester:
                raise UparkForbiddenError("Reservation belongs to another user")

        return await self._transition(reservation_id, ReservationTransition.CANCEL, check=_owned)

    def holder_lock(self, holder: str) -> asyncio.Lock:
        """Lock serializing *holder*'s bookings and transitions."""
        return self._user_lock(holder)

    async def cancel_for_operator(self, slot_number: int, holder: str) -> Reservation | None:
        """Cancel *holder*'s active booking on *slot_number* (admin override).

        The caller holds :meth:`holder_lock` for *holder*, so a booking that
        already reserved the slot has committed or rolled back by now.
        """
        active = await self.active_for_slot(slot_number)
        if active is None or active.user_identity != holder:
            return None
        return await self._transition_locked(active.id, ReservationTransition.CANCEL, cancelled_by=OPERATOR)

    async def expire(self, reservation_id: Any, *, now: datetime | None = None) -> Reservation:
        """Expire one booking whose end has passed.

        Raises :class:`UparkConflictError` if the booking end is still ahead.
        """
        at = ensure_aware(now) if now is not None else self._clock()

        def _due(reservation: Reservation) -> None:
            if reservation.holds_slot and not reservation.is_due(at):
                raise UparkConflictError("Reservation has not ended yet", reason="not_due")

        return await self._transition(reservation_id, ReservationTransition.EXPIRE, check=_due)

    async def expire_due(self, *, now: datetime | None = None) -> list[Reservation]:
        """Expire every active booking whose end has passed.

        Bookings that changed state concurrently are skipped.
        """
        at = ensure_aware(now) if now is not None else self._clock()
        expired: list[Reservation] = []
        for reservation in await self._bounded(self._store.list_active()):
            if not reservation.is_due(at):
                continue
            try:
                expired.append(await self.expire(reservation.id, now=at))
            except UparkConflictError:
                _logger.debug("Reservation %s changed before expiry", reservation.id)
        return expired


def _require_unpaid(reservation: Reservation) -> None:
    if reservation.payment_status is PaymentStatus.COMPLETED:
        raise UparkConflictError("Payment already completed", reason="payment_completed")


def _payment_transition(outcome: PaymentOutcome) -> tuple[ReservationTransition, str | None]:
    if outcome.success:
        return ReservationTransition.PAYMENT_SUCCESS, outcome.payment_id
    return ReservationTransition.PAYMENT_FAILURE, None
