"""Reservation records, closed status variants and the transition table."""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from pydantic import Field, field_validator, model_validator

from pyupark.exceptions import UparkTransitionError
from pyupark.models._base import UparkBaseModel, ensure_aware, utcnow


class VehicleType(enum.StrEnum):
    """Vehicle class used for pricing."""

    TWO_WHEELER = "2W"
    FOUR_WHEELER = "4W"


class DurationUnit(enum.StrEnum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"


class PaymentStatus(enum.StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ReservationStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ReservationTransition(enum.StrEnum):
    """Events that move an existing reservation through its lifecycle."""

    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"
    CANCEL = "cancel"
    EXPIRE = "expire"


# transition -> (allowed statuses, allowed payment statuses)
_PRECONDITIONS: dict[ReservationTransition, tuple[frozenset[ReservationStatus], frozenset[PaymentStatus]]] = {
    ReservationTransition.PAYMENT_SUCCESS: (
        frozenset({ReservationStatus.ACTIVE}),
        frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED}),
    ),
    ReservationTransition.PAYMENT_FAILURE: (
        frozenset({ReservationStatus.ACTIVE}),
        frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED}),
    ),
    ReservationTransition.CANCEL: (
        frozenset({ReservationStatus.ACTIVE}),
        frozenset(PaymentStatus),
    ),
    ReservationTransition.EXPIRE: (
        frozenset({ReservationStatus.ACTIVE}),
        frozenset(PaymentStatus),
    ),
}


def next_state(
    transition: ReservationTransition,
    status: ReservationStatus,
    payment_status: PaymentStatus,
) -> tuple[ReservationStatus, PaymentStatus]:
    """Apply *transition* to a ``(status, payment_status)`` pair.

    Raises :class:`UparkTransitionError` for any pair the table does not list.
    """
    allowed_status, allowed_payment = _PRECONDITIONS[transition]
    if status not in allowed_status or payment_status not in allowed_payment:
        raise UparkTransitionError(
            f"Cannot apply {transition.value} to reservation in {status.value}/{payment_status.value}",
            reason=transition.value,
        )

    if transition is ReservationTransition.PAYMENT_SUCCESS:
        return ReservationStatus.ACTIVE, PaymentStatus.COMPLETED
    if transition is ReservationTransition.PAYMENT_FAILURE:
        # A failed payment gives the slot back, so the booking stops holding it.
        return ReservationStatus.CANCELLED, PaymentStatus.FAILED
    if transition is ReservationTransition.CANCEL:
        refunded = payment_status is PaymentStatus.COMPLETED
        return ReservationStatus.CANCELLED, PaymentStatus.REFUNDED if refunded else PaymentStatus.FAILED
    return ReservationStatus.EXPIRED, payment_status


class Reservation(UparkBaseModel):
    """One booking attempt. Never deleted; only its status moves."""

    id: int = Field(..., gt=0)
    slot_number: int = Field(..., gt=0)
    user_identity: str
    vehicle_plate: str
    vehicle_type: VehicleType
    booking_start: datetime
    duration_value: int = Field(..., gt=0)
    duration_unit: DurationUnit
    booking_end: datetime
    total_amount: int = Field(..., ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: ReservationStatus = ReservationStatus.ACTIVE
    payment_id: str | None = None
    cancelled_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("booking_start", "booking_end", "created_at", "updated_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _check_window(self) -> Reservation:
        if self.booking_end <= self.booking_start:
            raise ValueError("booking_end must be after booking_start")
        return self

    @staticmethod
    def end_for(start: datetime, duration_hours: int) -> datetime:
        """Booking end; duration is counted in hours for both units."""
        return ensure_aware(start) + timedelta(hours=duration_hours)

    @property
    def holds_slot(self) -> bool:
        return self.status is ReservationStatus.ACTIVE

    def is_due(self, now: datetime) -> bool:
        return self.holds_slot and self.booking_end <= ensure_aware(now)

    def transition(
        self,
        transition: ReservationTransition,
        *,
        now: datetime | None = None,
        payment_id: str | None = None,
        cancelled_by: str | None = None,
    ) -> Reservation:
        """Return the reservation after *transition*; the original is untouched."""
        status, payment_status = next_state(transition, self.status, self.payment_status)
        update: dict[str, object] = {
            "status": status,
            "payment_status": payment_status,
            "updated_at": now or utcnow(),
        }
        if payment_id is not None:
            update["payment_id"] = payment_id
        if cancelled_by is not None:
            update["cancelled_by"] = cancelled_by
        return self.model_copy(update=update)
