"""Slot reconciler.

The merge point for every slot writer. For each delta it reads the
current entry, asks :func:`pyupark.state.policy.resolve_delta` what to
do, persists the result and hands the change record to the sink.

Concurrency: one ``asyncio.Lock`` per slot number makes
read-decide-write atomic for a slot, while deltas for different slots
run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from pyupark.exceptions import (
    UparkConflictError,
    UparkNotFoundError,
    UparkTransientStoreError,
)
from pyupark.models.slot import Slot, SlotChange
from pyupark.state.events import DeltaSource, SlotDelta
from pyupark.state.policy import Decision, resolve_delta
from pyupark.state.store import OverrideMarker, SlotEntry, SlotStore

_logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeSink = Callable[[list[SlotChange]], None]


@dataclass
class BatchResult:
    """Outcome of reconciling a batch of deltas."""

    changes: list[SlotChange] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class SlotReconciler:
    """Precedence authority for slot state."""

    def __init__(
        self,
        store: SlotStore,
        *,
        sink: ChangeSink | None = None,
        store_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._sink = sink
        self._store_timeout = store_timeout
        self._locks: dict[int, asyncio.Lock] = {}

    def set_sink(self, sink: ChangeSink | None) -> None:
        self._sink = sink

    def _lock(self, slot_number: int) -> asyncio.Lock:
        lock = self._locks.get(slot_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[slot_number] = lock
        return lock

    async def _bounded(self, awaitable: Awaitable[T], slot_number: int | None) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._store_timeout)
        except TimeoutError as exc:
            raise UparkTransientStoreError(
                f"Slot store timed out after {self._store_timeout}s",
                slot_number=slot_number,
            ) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_slot(self, slot_number: int) -> Slot:
        entry = await self._bounded(self._store.get(slot_number), slot_number)
        if entry is None:
            raise UparkNotFoundError(f"Slot {slot_number} not found", entity="slot", key=slot_number)
        return entry.slot

    async def get_entry(self, slot_number: int) -> SlotEntry:
        entry = await self._bounded(self._store.get(slot_number), slot_number)
        if entry is None:
            raise UparkNotFoundError(f"Slot {slot_number} not found", entity="slot", key=slot_number)
        return entry

    async def snapshot(self) -> list[Slot]:
        """All slots ordered by slot number."""
        entries = await self._bounded(self._store.list_entries(), None)
        return [entry.slot for entry in entries]

    async def slot_numbers(self) -> list[int]:
        return [slot.slot_number for slot in await self.snapshot()]

    async def reserved_slot_numbers(self) -> list[int]:
        return [slot.slot_number for slot in await self.snapshot() if slot.is_reserved]

    async def provision(self, slots: Iterable[Slot]) -> int:
        return await self._bounded(self._store.provision(slots), None)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def apply(self, delta: SlotDelta) -> SlotChange | None:
        """Reconcile one delta.

        Returns the change record, or ``None`` when the delta was suppressed.

        Raises
        ------
        UparkNotFoundError
            The slot does not exist.
        UparkConflictError
            A compare-and-set guard failed (slot no longer available, or
            its reservation link changed under an admin override).
        UparkTransientStoreError
            The store failed or timed out; nothing was persisted.
        """
        async with self._lock(delta.slot_number):
            entry = await self.get_entry(delta.slot_number)
            decision = resolve_delta(entry.slot, delta, pinned=entry.pinned)

            if decision.rejected:
                detail = "is not available" if decision.reason == "unavailable" else "changed concurrently"
                raise UparkConflictError(
                    f"Slot {delta.slot_number} {detail}",
                    reason=decision.reason,
                )

            updated = self._next_entry(entry, delta, decision)
            if updated is None:
                _logger.debug(
                    "Delta suppressed slot=%s source=%s reason=%s",
                    delta.slot_number,
                    delta.source,
                    decision.reason,
                )
                return None

            await self._bounded(self._store.save(updated), delta.slot_number)

            if not decision.changed:
                return None

            change = decision.slot.to_change()
            _logger.debug(
                "Slot %s reconciled source=%s state=%s",
                delta.slot_number,
                delta.source,
                decision.slot.state,
            )
            # Emitted under the slot lock so per-slot order reaches the sink intact.
            self._emit([change])
            return change

    async def apply_batch(self, deltas: Iterable[SlotDelta]) -> BatchResult:
        """Reconcile many deltas; one slot's failure never aborts the others.

        Failed slots are logged and reported in ``BatchResult.failed``; they
        are retried naturally by the next signal covering them.
        """
        pending = list(deltas)
        result = BatchResult()
        if not pending:
            return result

        outcomes = await asyncio.gather(
            *(self.apply(delta) for delta in pending),
            return_exceptions=True,
        )
        for delta, outcome in zip(pending, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                _logger.warning(
                    "Reconciling slot %s failed; will retry on next signal",
                    delta.slot_number,
                    exc_info=outcome,
                )
                result.failed.append(delta.slot_number)
            elif outcome is not None:
                result.changes.append(outcome)
        return result

    @staticmethod
    def _next_entry(entry: SlotEntry, delta: SlotDelta, decision: Decision) -> SlotEntry | None:
        """Entry to persist, or ``None`` when neither slot nor pin changed."""
        if decision.pinned:
            if delta.source is DeltaSource.ADMIN:
                override: OverrideMarker | None = OverrideMarker(
                    desired_state=decision.slot.state,
                    applied_at=delta.observed_at,
                )
            else:
                override = entry.override
        else:
            override = None

        if not decision.changed and override == entry.override:
            return None
        return SlotEntry(slot=decision.slot, override=override)

    def _emit(self, changes: list[SlotChange]) -> None:
        if self._sink is None or not changes:
            return
        try:
            self._sink(changes)
        except Exception:
            # Notification trouble is not a state-change failure.
            _logger.warning("Change sink failed for %d change(s)", len(changes), exc_info=True)

