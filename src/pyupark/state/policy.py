"""Slot precedence policy.

This module is a pure function of ``(current slot, pin, delta)``. It does
no I/O and holds no state, so every precedence rule can be tested without
a store or a broker.

Rules, evaluated per delta:

1. A hardware delta never touches a reserved slot.
2. An admin delta applies and pins the slot against hardware input
   unless its snapshot guard no longer matches the reservation link; the
   next lifecycle or admin delta for the slot replaces the pin.
3. A delta that changes no observable field is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pyupark.models.slot import Slot
from pyupark.state.events import DeltaGuard, DeltaSource, SlotDelta


@dataclass(frozen=True)
class Decision:
    """Outcome of resolving one delta against the current slot."""

    slot: Slot
    pinned: bool
    changed: bool
    rejected: bool = False
    reason: str = ""


def _noop(current: Slot, pinned: bool, reason: str, *, rejected: bool = False) -> Decision:
    return Decision(slot=current, pinned=pinned, changed=False, rejected=rejected, reason=reason)


def _hardware_patch(current: Slot, delta: SlotDelta) -> dict[str, Any]:
    occupied = bool(delta.data["is_occupied"])
    patch: dict[str, Any] = {"is_occupied": occupied}
    # A bay reported empty no longer holds the vehicle it was linked to.
    if not occupied:
        patch["occupant_vehicle"] = None
    return patch


def resolve_delta(current: Slot, delta: SlotDelta, *, pinned: bool) -> Decision:
    """Decide what *delta* does to *current*.

    Parameters
    ----------
    current
        Persisted slot.
    delta
        Candidate update.
    pinned
        Whether an admin override currently pins the slot.

    Returns
    -------
    Decision
        ``changed`` is False for suppressed deltas; ``rejected`` is True when
        a compare-and-set guard failed.
    """
    if delta.slot_number != current.slot_number:
        raise ValueError(f"delta for slot {delta.slot_number} applied to slot {current.slot_number}")

    if delta.source is DeltaSource.HARDWARE:
        if pinned:
            return _noop(current, pinned, "override")
        if current.is_reserved:
            return _noop(current, pinned, "reserved")
        patch = _hardware_patch(current, delta)
        pinned_after = pinned
    elif delta.source is DeltaSource.LIFECYCLE:
        if delta.guard is DeltaGuard.AVAILABLE and not current.is_available:
            return _noop(current, pinned, "unavailable", rejected=True)
        if delta.guard is DeltaGuard.HELD_BY and (
            not current.is_reserved or current.reserved_by != delta.expect_reserved_by
        ):
            return _noop(current, pinned, "not_held")
        patch = dict(delta.data)
        pinned_after = False
    else:
        if delta.guard is DeltaGuard.SNAPSHOT and (
            current.is_reserved != delta.expect_reserved or current.reserved_by != delta.expect_reserved_by
        ):
            return _noop(current, pinned, "stale", rejected=True)
        patch = dict(delta.data)
        pinned_after = True

    updated = current.model_copy(update=patch)
    changed = updated.observable() != current.observable()
    return Decision(
        slot=updated if changed else current,
        pinned=pinned_after,
        changed=changed,
        reason="" if changed else "unchanged",
    )
