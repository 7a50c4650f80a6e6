"""Reservation ledger.

Reservations are append-only: rows are inserted once and afterwards only
their status fields move. The booking profile is written in the same
commit as the reservation it summarises.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from pyupark.models.profile import BookingProfile
from pyupark.models.reservation import Reservation, ReservationStatus


class ReservationStore(Protocol):
    """Structural ledger interface.

    Implementations raise :class:`pyupark.exceptions.UparkTransientStoreError`
    when persistence is unavailable.
    """

    async def next_id(self) -> int: ...

    async def get(self, reservation_id: int) -> Reservation | None: ...

    async def list_for_user(self, user_identity: str) -> list[Reservation]: ...

    async def list_active(self) -> list[Reservation]: ...

    async def get_profile(self, user_identity: str) -> BookingProfile | None: ...

    async def commit(self, reservation: Reservation, profile: BookingProfile | None = None) -> None: ...


class InMemoryReservationStore:
    """In-memory ledger with a monotonic id sequence."""

    def __init__(self) -> None:
        self._rows: dict[int, Reservation] = {}
        self._profiles: dict[str, BookingProfile] = {}
        self._last_id = 0

    async def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    async def get(self, reservation_id: int) -> Reservation | None:
        return self._rows.get(reservation_id)

    async def list_for_user(self, user_identity: str) -> list[Reservation]:
        rows = [row for row in self._rows.values() if row.user_identity == user_identity]
        return sorted(rows, key=lambda row: (row.created_at, row.id), reverse=True)

    async def list_active(self) -> list[Reservation]:
        return _active(self._rows.values())

    async def get_profile(self, user_identity: str) -> BookingProfile | None:
        return self._profiles.get(user_identity)

    async def commit(self, reservation: Reservation, profile: BookingProfile | None = None) -> None:
        existing = self._rows.get(reservation.id)
        if existing is not None and existing.user_identity != reservation.user_identity:
            raise ValueError(f"reservation {reservation.id} cannot change owner")
        self._rows[reservation.id] = reservation
        self._last_id = max(self._last_id, reservation.id)
        if profile is not None:
            self._profiles[profile.user_identity] = profile


def _active(rows: Iterable[Reservation]) -> list[Reservation]:
    return sorted((row for row in rows if row.status is ReservationStatus.ACTIVE), key=lambda row: row.id)
