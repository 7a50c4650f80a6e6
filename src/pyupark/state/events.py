"""Slot deltas proposed by the three writers.

Sensor ingest, the reservation lifecycle and the admin override handler
all express their intent as a :class:`SlotDelta`. Only the reconciler is
allowed to merge them into the store.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pyupark.models._base import ensure_aware, utcnow

SLOT_FIELDS: frozenset[str] = frozenset({"is_occupied", "is_reserved", "reserved_by", "occupant_vehicle"})


class DeltaSource(StrEnum):
    HARDWARE = "hardware"
    LIFECYCLE = "lifecycle"
    ADMIN = "admin"


class DeltaGuard(StrEnum):
    """Compare-and-set condition evaluated against the current slot."""

    NONE = "none"
    # Slot must be neither occupied nor reserved (booking a free slot).
    AVAILABLE = "available"
    # Slot must still be linked to ``expect_reserved_by`` (releasing a booking).
    HELD_BY = "held_by"
    # Reservation link must still equal ``expect_reserved``/``expect_reserved_by``
    # (operator override decided against an earlier read).
    SNAPSHOT = "snapshot"


class SlotDelta(BaseModel):
    """A candidate update for one slot."""

    model_config = ConfigDict(frozen=True)

    slot_number: int = Field(..., gt=0)
    source: DeltaSource
    data: dict[str, Any] = Field(default_factory=dict, description="Field patch")
    guard: DeltaGuard = DeltaGuard.NONE
    expect_reserved: bool | None = None
    expect_reserved_by: str | None = None
    observed_at: datetime = Field(default_factory=utcnow)

    @field_validator("data")
    @classmethod
    def _known_fields(cls, value: dict[str, Any]) -> dict[str, Any]:
        unknown = set(value) - SLOT_FIELDS
        if unknown:
            raise ValueError(f"unknown slot fields: {sorted(unknown)}")
        return value

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _source_scope(self) -> SlotDelta:
        if self.source is DeltaSource.HARDWARE and set(self.data) - {"is_occupied"}:
            raise ValueError("hardware deltas may only carry is_occupied")
        if self.guard is DeltaGuard.HELD_BY and self.expect_reserved_by is None:
            raise ValueError("HELD_BY guard requires expect_reserved_by")
        if self.guard is DeltaGuard.SNAPSHOT and self.expect_reserved is None:
            raise ValueError("SNAPSHOT guard requires expect_reserved")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def occupancy(cls, slot_number: int, occupied: bool) -> SlotDelta:
        return cls(slot_number=slot_number, source=DeltaSource.HARDWARE, data={"is_occupied": occupied})

    @classmethod
    def reserve(cls, slot_number: int, *, user_identity: str, vehicle_plate: str) -> SlotDelta:
        return cls(
            slot_number=slot_number,
            source=DeltaSource.LIFECYCLE,
            data={"is_reserved": True, "reserved_by": user_identity, "occupant_vehicle": vehicle_plate},
            guard=DeltaGuard.AVAILABLE,
        )

    @classmethod
    def release(cls, slot_number: int, *, user_identity: str) -> SlotDelta:
        return cls(
            slot_number=slot_number,
            source=DeltaSource.LIFECYCLE,
            data={"is_occupied": False, "is_reserved": False, "reserved_by": None, "occupant_vehicle": None},
            guard=DeltaGuard.HELD_BY,
            expect_reserved_by=user_identity,
        )

    @classmethod
    def override(
        cls,
        slot_number: int,
        data: dict[str, Any],
        *,
        expect_reserved: bool | None = None,
        expect_reserved_by: str | None = None,
    ) -> SlotDelta:
        if expect_reserved is None:
            return cls(slot_number=slot_number, source=DeltaSource.ADMIN, data=data)
        return cls(
            slot_number=slot_number,
            source=DeltaSource.ADMIN,
            data=data,
            guard=DeltaGuard.SNAPSHOT,
            expect_reserved=expect_reserved,
            expect_reserved_by=expect_reserved_by,
        )
