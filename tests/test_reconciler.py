from __future__ import annotations

import asyncio

import pytest

from pyupark.exceptions import UparkConflictError, UparkNotFoundError, UparkTransientStoreError
from pyupark.models.slot import Slot, SlotChange
from pyupark.state.events import SlotDelta
from pyupark.state.reconciler import SlotReconciler
from pyupark.state.store import InMemorySlotStore, SlotEntry


class _FlakyStore(InMemorySlotStore):
    """Fails every save for the given slot numbers."""

    def __init__(self, failing: set[int]) -> None:
        super().__init__()
        self.failing = failing

    async def save(self, entry: SlotEntry) -> None:
        if entry.slot.slot_number in self.failing:
            raise UparkTransientStoreError("disk full", slot_number=entry.slot.slot_number)
        await super().save(entry)


class _SlowStore(InMemorySlotStore):
    async def get(self, slot_number: int) -> SlotEntry | None:
        await asyncio.sleep(1.0)
        return await super().get(slot_number)


async def _reconciler(
    store: InMemorySlotStore | None = None, count: int = 6
) -> tuple[SlotReconciler, list[SlotChange]]:
    emitted: list[SlotChange] = []
    reconciler = SlotReconciler(store or InMemorySlotStore(), sink=emitted.extend)
    await reconciler.provision(Slot(slot_number=n, location=f"A{n}") for n in range(1, count + 1))
    return reconciler, emitted


@pytest.mark.asyncio
async def test_provision_is_idempotent() -> None:
    reconciler, _ = await _reconciler()

    assert await reconciler.provision([Slot(slot_number=1), Slot(slot_number=7)]) == 1
    assert await reconciler.slot_numbers() == [1, 2, 3, 4, 5, 6, 7]


@pytest.mark.asyncio
async def test_same_sweep_twice_emits_once() -> None:
    reconciler, emitted = await _reconciler(count=3)
    deltas = [SlotDelta.occupancy(1, True), SlotDelta.occupancy(2, False), SlotDelta.occupancy(3, True)]

    first = await reconciler.apply_batch(deltas)
    second = await reconciler.apply_batch(deltas)

    assert sorted(c.slot_number for c in first.changes) == [1, 3]
    assert second.changes == []
    assert len(emitted) == 2


@pytest.mark.asyncio
async def test_batch_isolates_failing_slot() -> None:
    reconciler, emitted = await _reconciler(_FlakyStore({2}), count=3)

    result = await reconciler.apply_batch(SlotDelta.occupancy(n, True) for n in (1, 2, 3))

    assert result.failed == [2]
    assert sorted(c.slot_number for c in result.changes) == [1, 3]
    assert not (await reconciler.get_slot(2)).is_occupied
    assert len(emitted) == 2


@pytest.mark.asyncio
async def test_concurrent_reserve_has_one_winner() -> None:
    reconciler, _ = await _reconciler()

    outcomes = await asyncio.gather(
        reconciler.apply(SlotDelta.reserve(4, user_identity="111", vehicle_plate="A")),
        reconciler.apply(SlotDelta.reserve(4, user_identity="222", vehicle_plate="B")),
        return_exceptions=True,
    )

    assert sum(isinstance(o, SlotChange) for o in outcomes) == 1
    assert sum(isinstance(o, UparkConflictError) for o in outcomes) == 1
    assert (await reconciler.get_slot(4)).reserved_by in {"111", "222"}


@pytest.mark.asyncio
async def test_admin_pin_persisted_and_cleared_by_lifecycle() -> None:
    reconciler, _ = await _reconciler()

    await reconciler.apply(SlotDelta.override(2, {"is_occupied": True}))
    assert (await reconciler.get_entry(2)).pinned
    assert await reconciler.apply(SlotDelta.occupancy(2, False)) is None

    await reconciler.apply(SlotDelta.override(2, {"is_occupied": False}))
    await reconciler.apply(SlotDelta.reserve(2, user_identity="111", vehicle_plate="A"))

    assert not (await reconciler.get_entry(2)).pinned


@pytest.mark.asyncio
async def test_reserved_slot_numbers() -> None:
    reconciler, _ = await _reconciler()
    await reconciler.apply(SlotDelta.reserve(5, user_identity="111", vehicle_plate="A"))
    await reconciler.apply(SlotDelta.reserve(1, user_identity="222", vehicle_plate="B"))

    assert await reconciler.reserved_slot_numbers() == [1, 5]


@pytest.mark.asyncio
async def test_unknown_slot_not_found() -> None:
    reconciler, _ = await _reconciler()

    with pytest.raises(UparkNotFoundError):
        await reconciler.apply(SlotDelta.occupancy(42, True))


@pytest.mark.asyncio
async def test_store_timeout_is_transient() -> None:
    reconciler = SlotReconciler(_SlowStore(), store_timeout=0.01)

    with pytest.raises(UparkTransientStoreError):
        await reconciler.get_slot(1)


@pytest.mark.asyncio
async def test_sink_failure_does_not_fail_apply() -> None:
    def _broken(changes: list[SlotChange]) -> None:
        raise RuntimeError("viewer down")

    reconciler = SlotReconciler(InMemorySlotStore(), sink=_broken)
    await reconciler.provision([Slot(slot_number=1)])

    change = await reconciler.apply(SlotDelta.occupancy(1, True))

    assert change is not None
    assert (await reconciler.get_slot(1)).is_occupied
