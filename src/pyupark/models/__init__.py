"""pyupark record models."""

from pyupark.models.profile import BookingProfile, MembershipLevel
from pyupark.models.reservation import (
    DurationUnit,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    ReservationTransition,
    VehicleType,
)
from pyupark.models.slot import Slot, SlotChange, SlotState, SlotType

__all__ = [
    "BookingProfile",
    "DurationUnit",
    "MembershipLevel",
    "PaymentStatus",
    "Reservation",
    "ReservationStatus",
    "ReservationTransition",
    "Slot",
    "SlotChange",
    "SlotState",
    "SlotType",
    "VehicleType",
]
