from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio

from pyupark.config import UparkConfig
from pyupark.engine import ParkingEngine
from pyupark.reservations.payments import PaymentOutcome
from pyupark.reservations.vehicles import InMemoryVehicleRegistry

NOW = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


class RecordingHardware:
    """Hardware link double; fails the first ``failures`` sends."""

    def __init__(self, failures: int = 0) -> None:
        self.sent: list[tuple[str, str]] = []
        self.failures = failures

    async def send(self, topic_suffix: str, payload: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("bus down")
        self.sent.append((topic_suffix, payload))

    def payloads(self, topic_suffix: str) -> list[str]:
        return [payload for topic, payload in self.sent if topic == topic_suffix]


class RecordingViewers:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def publish(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[Any]:
        return [payload for name, payload in self.events if name == event]


class FixedGateway:
    def __init__(self, *, success: bool) -> None:
        self.success = success
        self.calls: list[tuple[int, int]] = []

    async def charge(self, *, reservation_id: int, amount: int) -> PaymentOutcome:
        # Suspend like a real network call would.
        await asyncio.sleep(0)
        self.calls.append((reservation_id, amount))
        if self.success:
            return PaymentOutcome(success=True, payment_id=f"PAY_TEST_{reservation_id}")
        return PaymentOutcome(success=False, message="declined")


def make_config(**overrides: Any) -> UparkConfig:
    values: dict[str, Any] = {
        "mqtt_enabled": False,
        "hardware_resync_delay": 0.0,
        "notification_retry_delay": 0.0,
    }
    values.update(overrides)
    return UparkConfig(**values)


@pytest.fixture
def vehicles() -> InMemoryVehicleRegistry:
    registry = InMemoryVehicleRegistry()
    registry.add("KA01AB1234", "4W", "9990001111")
    registry.add("KA02CD5678", "4W", "9990002222")
    registry.add("KA03EF9012", "2W", "9990003333")
    return registry


@pytest.fixture
def hardware() -> RecordingHardware:
    return RecordingHardware()


@pytest.fixture
def viewers() -> RecordingViewers:
    return RecordingViewers()


@pytest.fixture
def gateway() -> FixedGateway:
    return FixedGateway(success=True)


@pytest_asyncio.fixture
async def engine(
    vehicles: InMemoryVehicleRegistry,
    hardware: RecordingHardware,
    viewers: RecordingViewers,
    gateway: FixedGateway,
) -> AsyncIterator[ParkingEngine]:
    async with ParkingEngine(
        make_config(),
        vehicles=vehicles,
        viewers=viewers,
        hardware=hardware,
        payment_gateway=gateway,
        clock=lambda: NOW,
    ) as running:
        await running.fanout.flush()
        yield running
