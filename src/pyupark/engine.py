"""High-level async engine for slot reconciliation and reservations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from pyupark._constants import (
    EVENT_DEVICE_STATUS,
    TOPIC_ENTRY_GATE_CONTROL,
    TOPIC_EXIT_GATE_CONTROL,
    TOPIC_GATE_CONTROL,
)
from pyupark._mqtt import MqttBootstrap, UparkMqttRuntime
from pyupark.admin import AdminOverrideHandler
from pyupark.config import UparkConfig
from pyupark.exceptions import UparkError, UparkMalformedSignalError, UparkValidationError
from pyupark.ingestion.gates import Gate, decode_device_status, decode_gate_status, parse_gate_command
from pyupark.ingestion.mqtt import HardwareMessage, HardwareMessageKind, build_hardware_message
from pyupark.ingestion.sensors import build_occupancy_deltas, decode_sensor_payload
from pyupark.models._base import utcnow
from pyupark.models.profile import BookingProfile
from pyupark.models.reservation import Reservation
from pyupark.models.slot import Slot, SlotChange, SlotType
from pyupark.notify import HardwareLink, NotificationFanout, ViewerHub, ViewerPublisher
from pyupark.reservations.lifecycle import ReservationManager
from pyupark.reservations.payments import HttpPaymentGateway, MockPaymentGateway, PaymentGateway, PaymentOutcome
from pyupark.reservations.pricing import FeeQuote, calculate_fee, quote
from pyupark.reservations.store import InMemoryReservationStore, ReservationStore
from pyupark.reservations.vehicles import InMemoryVehicleRegistry, VehicleRegistry
from pyupark.state.reconciler import BatchResult, SlotReconciler
from pyupark.state.store import InMemorySlotStore, SlotStore

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_GATE_TOPICS: dict[Gate, str] = {
    Gate.ENTRY: TOPIC_ENTRY_GATE_CONTROL,
    Gate.EXIT: TOPIC_EXIT_GATE_CONTROL,
    Gate.LEGACY: TOPIC_GATE_CONTROL,
}


class ParkingEngine:
    """Slot reconciliation and reservation lifecycle engine.

    Usage::

        async with ParkingEngine(config, viewers=hub) as engine:
            await engine.ingest_sensor_payload("1,2,5")
            reservation = await engine.create_reservation(...)

    Collaborators default to in-memory implementations; pass real ones to
    persist elsewhere. With ``hardware=None`` and ``config.mqtt_enabled`` the
    engine connects its own MQTT runtime on entry.
    """

    def __init__(
        self,
        config: UparkConfig | None = None,
        *,
        slot_store: SlotStore | None = None,
        reservation_store: ReservationStore | None = None,
        vehicles: VehicleRegistry | None = None,
        viewers: ViewerPublisher | None = None,
        hardware: HardwareLink | None = None,
        payment_gateway: PaymentGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or UparkConfig()
        self._viewers = viewers if viewers is not None else ViewerHub()
        self._vehicles = vehicles if vehicles is not None else InMemoryVehicleRegistry()
        self._hardware = hardware
        self._owned_gateway: HttpPaymentGateway | None = None
        self._mqtt_runtime: UparkMqttRuntime | None = None
        self._inbound_tasks: set[asyncio.Task[None]] = set()
        self._accepting_inbound = False

        if payment_gateway is None:
            if self._config.payment_gateway_url:
                self._owned_gateway = HttpPaymentGateway(
                    self._config.payment_gateway_url,
                    timeout=self._config.payment_timeout,
                )
                payment_gateway = self._owned_gateway
            else:
                payment_gateway = MockPaymentGateway(success_rate=self._config.mock_payment_success_rate)

        self.reconciler = SlotReconciler(
            slot_store if slot_store is not None else InMemorySlotStore(),
            store_timeout=self._config.store_timeout,
        )
        self.fanout = NotificationFanout(
            self._viewers,
            hardware,
            self.reconciler.reserved_slot_numbers,
            attempts=self._config.notification_attempts,
            retry_delay=self._config.notification_retry_delay,
            resync_delay=self._config.hardware_resync_delay,
        )
        self.reconciler.set_sink(self.fanout.enqueue_changes)
        self.reservations = ReservationManager(
            self.reconciler,
            reservation_store if reservation_store is not None else InMemoryReservationStore(),
            self._vehicles,
            gateway=payment_gateway,
            clock=clock,
            store_timeout=self._config.store_timeout,
            payment_timeout=self._config.payment_timeout,
        )
        self.admin = AdminOverrideHandler(self.reconciler, self.reservations, self.fanout)

    @property
    def config(self) -> UparkConfig:
        return self._config

    @property
    def viewers(self) -> ViewerPublisher:
        return self._viewers

    @property
    def vehicles(self) -> VehicleRegistry:
        return self._vehicles

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ParkingEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Provision slots, start delivery and announce the reserved set."""
        if self._owned_gateway is not None:
            await self._owned_gateway.__aenter__()
        total = await self.provision()
        _logger.info("Slot table ready (%d slots)", total)
        self._accepting_inbound = True
        if self._hardware is None and self._config.mqtt_enabled:
            await self._start_mqtt()
        self.fanout.start()
        self.fanout.request_reserved_sync(force=True)

    async def stop(self) -> None:
        self._accepting_inbound = False
        await self._drain_inbound()
        await self.fanout.stop()
        await self._stop_mqtt()
        if self._owned_gateway is not None:
            await self._owned_gateway.close()

    async def _start_mqtt(self) -> None:
        """Best-effort MQTT startup (failures must not break the reservation API)."""
        loop = asyncio.get_running_loop()
        try:
            runtime = UparkMqttRuntime(
                loop=loop,
                on_message=self._on_hardware_message,
                keepalive=self._config.mqtt_keepalive,
                logger=_logger,
            )
            # connect() resolves and dials the broker; keep it off the loop.
            await loop.run_in_executor(None, runtime.start, MqttBootstrap.from_config(self._config))
        except Exception:
            _logger.warning("MQTT startup failed; running without hardware link", exc_info=True)
            return
        self._mqtt_runtime = runtime
        self._hardware = runtime
        self.fanout.set_hardware(runtime)

    async def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if runtime is None:
            return
        if self._hardware is runtime:
            self._hardware = None
            self.fanout.set_hardware(None)
        try:
            await asyncio.get_running_loop().run_in_executor(None, runtime.stop)
        except Exception:
            _logger.debug("MQTT runtime stop failed", exc_info=True)

    async def _drain_inbound(self) -> None:
        tasks = list(self._inbound_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inbound_tasks.clear()

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def provision(self, count: int | None = None, slot_type: str | SlotType | None = None) -> int:
        """Create slots ``1..count`` that do not exist yet; returns the total number of slots."""
        total = self._config.slot_count if count is None else count
        try:
            kind = SlotType(str(slot_type or self._config.default_slot_type).strip().upper())
        except ValueError as exc:
            raise UparkValidationError(f"Invalid slot type {slot_type!r}", field="slot_type") from exc
        slots = [Slot(slot_number=n, slot_type=kind, location=f"A{n}") for n in range(1, total + 1)]
        created = await self.reconciler.provision(slots)
        if created:
            _logger.info("Provisioned %d slot(s)", created)
        return len(await self.reconciler.slot_numbers())

    async def get_slots(self) -> list[Slot]:
        """Full slot snapshot ordered by slot number."""
        return await self.reconciler.snapshot()

    async def get_slot(self, slot_number: int) -> Slot:
        return await self.reconciler.get_slot(slot_number)

    # ------------------------------------------------------------------
    # Hardware inbound
    # ------------------------------------------------------------------

    def _on_hardware_message(self, message: HardwareMessage) -> None:
        """Handle a bus message (called on the loop via call_soon_threadsafe)."""
        if not self._accepting_inbound:
            _logger.debug("Engine stopping; dropping message on %s", message.topic)
            return
        task = asyncio.get_running_loop().create_task(self.handle_hardware_message(message))
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)
        task.add_done_callback(_log_task_failure)

    async def handle_message(self, topic: str, payload: str | bytes) -> None:
        await self.handle_hardware_message(build_hardware_message(topic, payload, self._config.topic_prefix))

    async def handle_hardware_message(self, message: HardwareMessage) -> None:
        if message.kind is HardwareMessageKind.SLOT_STATUS:
            await self.ingest_sensor_payload(message.payload)
        elif message.kind is HardwareMessageKind.DEVICE_STATUS:
            await self.handle_device_status(message.payload)
        elif message.kind is HardwareMessageKind.GATE_STATUS:
            await self.handle_gate_status(message.payload)
        else:
            _logger.debug("Ignoring message on unknown topic %s", message.topic)

    async def ingest_sensor_payload(self, payload: str | bytes) -> BatchResult:
        """Reconcile one sensor sweep; malformed sweeps are logged and dropped."""
        try:
            reading = decode_sensor_payload(payload)
        except UparkMalformedSignalError:
            _logger.warning("Dropping malformed sensor payload", exc_info=True)
            return BatchResult()
        try:
            known = await self.reconciler.slot_numbers()
        except UparkError:
            _logger.warning("Slot store unavailable; sensor sweep skipped", exc_info=True)
            return BatchResult()
        result = await self.reconciler.apply_batch(build_occupancy_deltas(reading, known))
        _logger.debug(
            "Sensor sweep free=%s changes=%d failed=%s",
            sorted(reading.free),
            len(result.changes),
            result.failed,
        )
        return result

    async def handle_device_status(self, payload: str | bytes) -> None:
        try:
            status, online = decode_device_status(payload)
        except UparkMalformedSignalError:
            _logger.warning("Dropping malformed device status", exc_info=True)
            return
        self.fanout.enqueue_viewer_event(EVENT_DEVICE_STATUS, status)
        if online:
            _logger.info("Hardware unit online; scheduling reserved-set resync")
            self.fanout.device_online()

    async def handle_gate_status(self, payload: str | bytes) -> None:
        try:
            events = decode_gate_status(payload)
        except UparkMalformedSignalError:
            _logger.warning("Dropping malformed gate status", exc_info=True)
            return
        for event, status in events:
            self.fanout.enqueue_viewer_event(event, status)

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def override_slot(self, slot_number: Any, desired_state: Any) -> SlotChange | None:
        return await self.admin.override(slot_number, desired_state)

    def control_gate(self, gate: str | Gate, action: str) -> str:
        """Queue a gate command; returns the normalized action sent."""
        parsed_gate, parsed_action = parse_gate_command(gate, action)
        self.fanout.enqueue_hardware(_GATE_TOPICS[parsed_gate], parsed_action.value)
        return parsed_action.value

    # ------------------------------------------------------------------
    # Reservation API
    # ------------------------------------------------------------------

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a reservation call, reporting model validation failures as caller errors."""
        try:
            return await fn()
        except ValidationError as exc:
            errors = exc.errors()
            field = ".".join(str(part) for part in errors[0]["loc"]) if errors else ""
            raise UparkValidationError(f"Invalid input: {exc.error_count()} error(s)", field=field) from exc

    async def create_reservation(
        self,
        phone: Any,
        slot_number: Any,
        vehicle_plate: Any,
        vehicle_type: Any,
        duration: Any,
        duration_unit: Any,
        start_time: datetime | None = None,
    ) -> Reservation:
        return await self._call(
            lambda: self.reservations.create(
                phone=phone,
                slot_number=slot_number,
                vehicle_plate=vehicle_plate,
                vehicle_type=vehicle_type,
                duration=duration,
                duration_unit=duration_unit,
                start_time=start_time,
            )
        )

    async def record_payment(self, reservation_id: Any, outcome: PaymentOutcome | bool) -> Reservation:
        return await self._call(lambda: self.reservations.record_payment(reservation_id, outcome))

    async def process_payment(self, reservation_id: Any) -> tuple[Reservation, PaymentOutcome]:
        return await self._call(lambda: self.reservations.process_payment(reservation_id))

    async def cancel_reservation(self, reservation_id: Any, phone: Any) -> Reservation:
        return await self._call(lambda: self.reservations.cancel(reservation_id, phone))

    async def expire_reservation(self, reservation_id: Any, *, now: datetime | None = None) -> Reservation:
        return await self.reservations.expire(reservation_id, now=now)

    async def expire_due(self, *, now: datetime | None = None) -> list[Reservation]:
        return await self.reservations.expire_due(now=now)

    async def get_reservation(self, reservation_id: Any) -> Reservation:
        return await self.reservations.get(reservation_id)

    async def list_reservations(self, phone: str) -> list[Reservation]:
        return await self.reservations.list_for_user(phone)

    async def get_booking_profile(self, phone: str) -> BookingProfile:
        return await self.reservations.get_profile(phone)

    @staticmethod
    def calculate_fee(vehicle_type: Any, duration: Any, duration_unit: Any) -> int:
        return calculate_fee(vehicle_type, duration, duration_unit)

    @staticmethod
    def quote(vehicle_type: Any, duration: Any, duration_unit: Any) -> FeeQuote:
        return quote(vehicle_type, duration, duration_unit)


def _log_task_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.warning("Hardware message handling failed", exc_info=exc)


