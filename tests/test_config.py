from __future__ import annotations

import pytest

from pyupark.config import UparkConfig
from pyupark.exceptions import UparkConfigError


def test_defaults() -> None:
    config = UparkConfig()

    assert config.slot_count == 6
    assert config.topic("slot_status") == "parking_system_custom_123456/slot_status"
    assert config.payment_gateway_url is None


def test_from_env_reads_upark_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPARK_SLOT_COUNT", "12")
    monkeypatch.setenv("UPARK_TOPIC_PREFIX", "lot_b/")
    monkeypatch.setenv("UPARK_MQTT_ENABLED", "no")
    monkeypatch.setenv("UPARK_HARDWARE_RESYNC_DELAY", "0.5")

    config = UparkConfig.from_env()

    assert config.slot_count == 12
    assert config.topic_prefix == "lot_b/"
    assert config.mqtt_enabled is False
    assert config.hardware_resync_delay == 0.5


def test_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPARK_SLOT_COUNT", "12")
    monkeypatch.setenv("UPARK_MQTT_TLS", "1")

    config = UparkConfig.from_env(slot_count=3, mqtt_tls=False)

    assert config.slot_count == 3
    assert config.mqtt_tls is False


def test_invalid_numeric_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPARK_MQTT_PORT", "eighty")

    with pytest.raises(UparkConfigError):
        UparkConfig.from_env()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"slot_count": -1},
        {"default_slot_type": "3W"},
        {"notification_attempts": 0},
        {"mock_payment_success_rate": 1.5},
    ],
)
def test_invalid_values_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(UparkConfigError):
        UparkConfig(**kwargs)  # type: ignore[arg-type]
