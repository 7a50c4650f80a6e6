"""Parking fee computation.

``HOURLY`` bookings pay the hourly rate per hour; ``DAILY`` bookings pay
the daily rate per started day (``ceil(hours / 24)``). Rates are a fixed
lookup by vehicle class.
"""

from __future__ import annotations

import math
from typing import Any

from pyupark._constants import MAX_DURATION_HOURS, MIN_DURATION_HOURS, RATES
from pyupark.exceptions import UparkValidationError
from pyupark.ingestion.normalize import safe_int
from pyupark.models._base import UparkBaseModel
from pyupark.models.reservation import DurationUnit, VehicleType


class FeeQuote(UparkBaseModel):
    """Amount for a booking together with the rates it was computed from."""

    vehicle_type: VehicleType
    duration: int
    duration_unit: DurationUnit
    total_amount: int
    per_hour_rate: int
    per_day_rate: int


def parse_vehicle_type(value: Any) -> VehicleType:
    try:
        return VehicleType(str(value).strip().upper())
    except ValueError as exc:
        raise UparkValidationError(f"Invalid vehicle type {value!r}", field="vehicle_type") from exc


def parse_duration_unit(value: Any) -> DurationUnit:
    try:
        return DurationUnit(str(value).strip().upper())
    except ValueError as exc:
        raise UparkValidationError(f"Invalid duration type {value!r}", field="duration_unit") from exc


def parse_duration(value: Any, *, bounded: bool = True) -> int:
    """Whole hours; within 1h..7 days when *bounded*."""
    hours = safe_int(value)
    if hours is None or hours <= 0:
        raise UparkValidationError(f"Invalid duration {value!r}", field="duration")
    if bounded and not MIN_DURATION_HOURS <= hours <= MAX_DURATION_HOURS:
        raise UparkValidationError(
            "Invalid duration. Must be between 1 hour and 7 days.",
            field="duration",
        )
    return hours


def rates_for(vehicle_type: VehicleType) -> tuple[int, int]:
    """``(hourly, daily)`` rates for a vehicle class."""
    return RATES[vehicle_type.value]


def calculate_fee(vehicle_type: Any, duration: Any, duration_unit: Any) -> int:
    """Fee for a booking.

    Raises :class:`UparkValidationError` for an unknown vehicle class,
    unknown duration unit or a non-positive duration.
    """
    vtype = parse_vehicle_type(vehicle_type)
    unit = parse_duration_unit(duration_unit)
    hours = parse_duration(duration, bounded=False)
    hourly, daily = rates_for(vtype)
    if unit is DurationUnit.HOURLY:
        return hourly * hours
    return daily * math.ceil(hours / 24)


def quote(vehicle_type: Any, duration: Any, duration_unit: Any) -> FeeQuote:
    vtype = parse_vehicle_type(vehicle_type)
    unit = parse_duration_unit(duration_unit)
    hours = parse_duration(duration, bounded=False)
    hourly, daily = rates_for(vtype)
    return FeeQuote(
        vehicle_type=vtype,
        duration=hours,
        duration_unit=unit,
        total_amount=calculate_fee(vtype, hours, unit),
        per_hour_rate=hourly,
        per_day_rate=daily,
    )
