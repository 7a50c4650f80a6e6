"""Per-user booking profile aggregate.

Derived from the reservation history and rebuildable from it; never
authoritative state.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from pyupark._constants import LOYALTY_UNIT_AMOUNT, MEMBERSHIP_THRESHOLDS
from pyupark.models._base import UparkBaseModel
from pyupark.models.reservation import DurationUnit, VehicleType


class MembershipLevel(enum.StrEnum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


def membership_for_points(points: int) -> MembershipLevel:
    for threshold, level in MEMBERSHIP_THRESHOLDS:
        if points >= threshold:
            return MembershipLevel(level)
    return MembershipLevel.BRONZE


def loyalty_points_for(amount: int) -> int:
    return max(amount, 0) // LOYALTY_UNIT_AMOUNT


class BookingProfile(UparkBaseModel):
    """Running booking counters for one user."""

    user_identity: str
    total_reservations: int = Field(default=0, ge=0)
    active_reservations: int = Field(default=0, ge=0)
    total_amount_spent: int = Field(default=0, ge=0)
    loyalty_points: int = Field(default=0, ge=0)
    membership_level: MembershipLevel = MembershipLevel.BRONZE
    preferred_vehicle_type: VehicleType | None = None
    preferred_duration_unit: DurationUnit | None = None
    last_reservation_date: datetime | None = None

    def record_created(self, *, vehicle_type: VehicleType, duration_unit: DurationUnit, at: datetime) -> BookingProfile:
        return self.model_copy(
            update={
                "total_reservations": self.total_reservations + 1,
                "active_reservations": self.active_reservations + 1,
                "preferred_vehicle_type": vehicle_type,
                "preferred_duration_unit": duration_unit,
                "last_reservation_date": at,
            }
        )

    def record_paid(self, amount: int) -> BookingProfile:
        points = self.loyalty_points + loyalty_points_for(amount)
        return self.model_copy(
            update={
                "total_amount_spent": self.total_amount_spent + max(amount, 0),
                "loyalty_points": points,
                "membership_level": membership_for_points(points),
            }
        )

    def record_released(self) -> BookingProfile:
        return self.model_copy(update={"active_reservations": max(self.active_reservations - 1, 0)})
