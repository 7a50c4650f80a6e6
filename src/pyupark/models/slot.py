"""Slot records and the change record emitted by the reconciler."""

from __future__ import annotations

import enum

from pydantic import Field

from pyupark.models._base import UparkBaseModel


class SlotType(enum.StrEnum):
    """Vehicle classes a slot accepts."""

    TWO_WHEELER = "2W"
    FOUR_WHEELER = "4W"
    BOTH = "BOTH"


class SlotState(enum.StrEnum):
    """Visible state of a slot, as shown to viewers and operators."""

    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    OCCUPIED = "OCCUPIED"


class SlotChange(UparkBaseModel):
    """Normalized change record for one slot whose persisted state changed."""

    slot_number: int
    is_occupied: bool
    is_reserved: bool
    reserved_by: str | None = None
    occupant_vehicle: str | None = None


class Slot(UparkBaseModel):
    """One physical parking bay."""

    slot_number: int = Field(..., gt=0)
    is_occupied: bool = False
    is_reserved: bool = False
    reserved_by: str | None = None
    occupant_vehicle: str | None = None
    slot_type: SlotType = SlotType.BOTH
    location: str | None = None

    @property
    def state(self) -> SlotState:
        # Reservation dominates physical presence.
        if self.is_reserved:
            return SlotState.RESERVED
        if self.is_occupied:
            return SlotState.OCCUPIED
        return SlotState.AVAILABLE

    @property
    def is_available(self) -> bool:
        return not self.is_occupied and not self.is_reserved

    def observable(self) -> tuple[bool, bool, str | None, str | None]:
        """Fields whose change must reach observers."""
        return (self.is_occupied, self.is_reserved, self.reserved_by, self.occupant_vehicle)

    def to_change(self) -> SlotChange:
        return SlotChange(
            slot_number=self.slot_number,
            is_occupied=self.is_occupied,
            is_reserved=self.is_reserved,
            reserved_by=self.reserved_by,
            occupant_vehicle=self.occupant_vehicle,
        )
