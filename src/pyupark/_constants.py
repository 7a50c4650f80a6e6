"""Internal constants shared across the library."""

DEFAULT_TOPIC_PREFIX = "parking_system_custom_123456/"
DEFAULT_SLOT_COUNT = 6

# ------------------------------------------------------------------
# Hardware wire format
# ------------------------------------------------------------------

FULL_MARKERS: frozenset[str] = frozenset({"FULL", "ALL FULL"})
RESERVED_SET_EMPTY = "NONE"
DEVICE_ONLINE = "ONLINE"

TOPIC_SLOT_STATUS = "slot_status"
TOPIC_DEVICE_STATUS = "device_status"
TOPIC_GATE_STATUS = "gate_status"
TOPIC_RESERVATION_STATUS = "reservation_status"
TOPIC_ADMIN_SLOT_OVERRIDE = "admin_slot_override"
TOPIC_GATE_CONTROL = "gate_control"
TOPIC_ENTRY_GATE_CONTROL = "entry_gate_control"
TOPIC_EXIT_GATE_CONTROL = "exit_gate_control"

# ------------------------------------------------------------------
# Live-viewer event names
# ------------------------------------------------------------------

EVENT_SLOT_UPDATE = "database_slot_update"
EVENT_GATE_UPDATE = "gate_update"
EVENT_ENTRY_GATE_UPDATE = "entry_gate_update"
EVENT_EXIT_GATE_UPDATE = "exit_gate_update"
EVENT_DEVICE_STATUS = "device_status"

# ------------------------------------------------------------------
# Booking rules
# ------------------------------------------------------------------

MIN_DURATION_HOURS = 1
MAX_DURATION_HOURS = 7 * 24

# Vehicle class -> (hourly rate, daily rate)
RATES: dict[str, tuple[int, int]] = {
    "2W": (10, 80),
    "4W": (20, 150),
}

LOYALTY_UNIT_AMOUNT = 10
MEMBERSHIP_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (500, "PLATINUM"),
    (200, "GOLD"),
    (50, "SILVER"),
    (0, "BRONZE"),
)
