"""Engine configuration for pyupark."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyupark._constants import DEFAULT_SLOT_COUNT, DEFAULT_TOPIC_PREFIX
from pyupark.exceptions import UparkConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class UparkConfig:
    """Engine configuration.

    Parameters
    ----------
    slot_count : int
        Number of slots provisioned on first start (numbered ``1..slot_count``).
    default_slot_type : str
        Slot type assigned at provisioning (``2W``, ``4W`` or ``BOTH``).
    mqtt_enabled : bool
        Connect to the hardware message bus when the engine starts.
    mqtt_broker_host : str
        Broker host name.
    mqtt_broker_port : int
        Broker port.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_tls : bool
        Use TLS for the broker connection.
    topic_prefix : str
        Prefix shared by every hardware topic.
    hardware_resync_delay : float
        Seconds to wait after the unit reports ``ONLINE`` before the
        reserved-set is resent.
    notification_attempts : int
        Delivery attempts per notification before it is logged and dropped.
    notification_retry_delay : float
        Seconds between notification delivery attempts.
    store_timeout : float
        Upper bound in seconds for a single persistence call.
    payment_gateway_url : str or None
        HTTP payment gateway endpoint.  ``None`` selects the mock gateway.
    payment_timeout : float
        Upper bound in seconds for a payment gateway call.
    mock_payment_success_rate : float
        Probability that the mock gateway approves a charge.
    """

    slot_count: int = DEFAULT_SLOT_COUNT
    default_slot_type: str = "BOTH"
    mqtt_enabled: bool = True
    mqtt_broker_host: str = "broker.hivemq.com"
    mqtt_broker_port: int = 1883
    mqtt_keepalive: int = 60
    mqtt_tls: bool = False
    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    hardware_resync_delay: float = 2.0
    notification_attempts: int = 3
    notification_retry_delay: float = 0.2
    store_timeout: float = 5.0
    payment_gateway_url: str | None = None
    payment_timeout: float = 10.0
    mock_payment_success_rate: float = 0.9

    def __post_init__(self) -> None:
        if self.slot_count < 0:
            raise UparkConfigError(f"slot_count must be >= 0, got {self.slot_count}")
        if self.default_slot_type not in {"2W", "4W", "BOTH"}:
            raise UparkConfigError(f"default_slot_type must be 2W, 4W or BOTH, got {self.default_slot_type!r}")
        if self.notification_attempts < 1:
            raise UparkConfigError("notification_attempts must be >= 1")
        if not 0.0 <= self.mock_payment_success_rate <= 1.0:
            raise UparkConfigError("mock_payment_success_rate must be between 0 and 1")

    def topic(self, suffix: str) -> str:
        """Full topic name for a topic suffix."""
        return f"{self.topic_prefix}{suffix}"

    @classmethod
    def from_env(cls, **overrides: Any) -> UparkConfig:
        """Create configuration from environment variables.

        Reads optional ``UPARK_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        UparkConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "UPARK_DEFAULT_SLOT_TYPE": "default_slot_type",
            "UPARK_MQTT_HOST": "mqtt_broker_host",
            "UPARK_TOPIC_PREFIX": "topic_prefix",
            "UPARK_PAYMENT_GATEWAY_URL": "payment_gateway_url",
        }
        _ENV_INT_MAP = {
            "UPARK_SLOT_COUNT": "slot_count",
            "UPARK_MQTT_PORT": "mqtt_broker_port",
            "UPARK_MQTT_KEEPALIVE": "mqtt_keepalive",
            "UPARK_NOTIFICATION_ATTEMPTS": "notification_attempts",
        }
        _ENV_FLOAT_MAP = {
            "UPARK_HARDWARE_RESYNC_DELAY": "hardware_resync_delay",
            "UPARK_NOTIFICATION_RETRY_DELAY": "notification_retry_delay",
            "UPARK_STORE_TIMEOUT": "store_timeout",
            "UPARK_PAYMENT_TIMEOUT": "payment_timeout",
            "UPARK_MOCK_PAYMENT_SUCCESS_RATE": "mock_payment_success_rate",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val.strip()

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise UparkConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("UPARK_MQTT_ENABLED"), True)
        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("UPARK_MQTT_TLS"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
