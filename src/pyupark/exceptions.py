"""Custom exception hierarchy for pyupark."""

from __future__ import annotations


class UparkError(Exception):
    """Base exception for all pyupark errors."""


class UparkConfigError(UparkError):
    """Invalid or missing configuration."""


class UparkValidationError(UparkError):
    """Caller input has the wrong shape or is out of range.

    Raised before any state change; never retried automatically.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class UparkConflictError(UparkError):
    """Request collides with current state (slot taken, duplicate booking).

    The caller may retry with different parameters.
    """

    def __init__(self, message: str, *, reason: str = "") -> None:
        self.reason = reason
        super().__init__(message)


class UparkTransitionError(UparkConflictError):
    """Reservation or payment transition not allowed from the current state."""


class UparkNotFoundError(UparkError):
    """Unknown slot, reservation or vehicle."""

    def __init__(self, message: str, *, entity: str = "", key: object = None) -> None:
        self.entity = entity
        self.key = key
        super().__init__(message)


class UparkForbiddenError(UparkError):
    """Requester does not own the reservation it is acting on."""


class UparkTransientStoreError(UparkError):
    """Persistence unavailable or timed out.

    Safe to retry the same delta: reconciliation is idempotent.
    """

    def __init__(self, message: str, *, slot_number: int | None = None) -> None:
        self.slot_number = slot_number
        super().__init__(message)


class UparkMalformedSignalError(UparkError):
    """Hardware payload could not be decoded.

    Hardware-facing paths log and drop these; callers never see them.
    """

    def __init__(self, message: str, *, payload: str = "") -> None:
        self.payload = payload
        super().__init__(message)


class UparkPaymentError(UparkError):
    """Payment gateway unreachable, timed out or answered garbage.

    No reservation state is changed when this is raised.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UparkTransportError(UparkError):
    """Outbound publish (viewer broadcast or hardware topic) failed."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)
