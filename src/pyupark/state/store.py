"""Slot store.

The store is the only durable home of slot flags. The reconciler is the
only component that writes to it after provisioning.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from pyupark.models.slot import Slot, SlotState


class OverrideMarker(BaseModel):
    """Admin override currently pinning a slot."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    desired_state: SlotState
    applied_at: datetime


class SlotEntry(BaseModel):
    """Persisted slot plus its override pin."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    slot: Slot
    override: OverrideMarker | None = None

    @property
    def pinned(self) -> bool:
        return self.override is not None


class SlotStore(Protocol):
    """Structural store interface used by the reconciler.

    Implementations raise :class:`pyupark.exceptions.UparkTransientStoreError`
    when persistence is unavailable.
    """

    async def get(self, slot_number: int) -> SlotEntry | None: ...

    async def list_entries(self) -> list[SlotEntry]: ...

    async def save(self, entry: SlotEntry) -> None: ...

    async def provision(self, slots: Iterable[Slot]) -> int: ...


class InMemorySlotStore:
    """In-memory slot table.

    Entries are immutable models, so handing them out needs no copying.
    """

    def __init__(self) -> None:
        self._entries: dict[int, SlotEntry] = {}

    async def get(self, slot_number: int) -> SlotEntry | None:
        return self._entries.get(slot_number)

    async def list_entries(self) -> list[SlotEntry]:
        return [self._entries[n] for n in sorted(self._entries)]

    async def save(self, entry: SlotEntry) -> None:
        self._entries[entry.slot.slot_number] = entry

    async def provision(self, slots: Iterable[Slot]) -> int:
        """Create slots that do not exist yet; existing ones are kept as-is.

        Returns the number of slots created.
        """
        created = 0
        for slot in slots:
            if slot.slot_number in self._entries:
                continue
            self._entries[slot.slot_number] = SlotEntry(slot=slot)
            created += 1
        return created
