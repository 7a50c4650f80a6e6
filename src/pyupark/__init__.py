"""pyupark - Async slot reconciliation and reservation engine for uPark lots."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyupark")
except PackageNotFoundError:
    __version__ = "0+local"
from pyupark.config import UparkConfig
from pyupark.engine import ParkingEngine
from pyupark.exceptions import (
    UparkConfigError,
    UparkConflictError,
    UparkError,
    UparkForbiddenError,
    UparkMalformedSignalError,
    UparkNotFoundError,
    UparkPaymentError,
    UparkTransientStoreError,
    UparkTransitionError,
    UparkTransportError,
    UparkValidationError,
)
from pyupark.models import (
    BookingProfile,
    DurationUnit,
    MembershipLevel,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Slot,
    SlotChange,
    SlotState,
    SlotType,
    VehicleType,
)
from pyupark.notify import ViewerHub
from pyupark.reservations.payments import PaymentOutcome
from pyupark.reservations.vehicles import InMemoryVehicleRegistry, RegisteredVehicle

__all__ = [
    "__version__",
    "BookingProfile",
    "DurationUnit",
    "InMemoryVehicleRegistry",
    "MembershipLevel",
    "ParkingEngine",
    "PaymentOutcome",
    "PaymentStatus",
    "RegisteredVehicle",
    "Reservation",
    "ReservationStatus",
    "Slot",
    "SlotChange",
    "SlotState",
    "SlotType",
    "UparkConfig",
    "UparkConfigError",
    "UparkConflictError",
    "UparkError",
    "UparkForbiddenError",
    "UparkMalformedSignalError",
    "UparkNotFoundError",
    "UparkPaymentError",
    "UparkTransientStoreError",
    "UparkTransitionError",
    "UparkTransportError",
    "UparkValidationError",
    "VehicleType",
    "ViewerHub",
]
