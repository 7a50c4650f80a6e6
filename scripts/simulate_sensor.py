#!/usr/bin/env python3
"""Hardware unit simulator for a uPark lot.

Connects to the configured broker as the lot controller would:
1) announces ``ONLINE`` on the device status topic,
2) publishes a free-slot sweep on the slot status topic every interval,
3) prints the reserved-set, admin override and gate commands it receives.

Broker and topic prefix come from the ``UPARK_*`` environment variables.
"""

from __future__ import annotations

import argparse
import logging
import random
import signal
import sys
import time
from pathlib import Path
from typing import Any

import paho.mqtt.client as mqtt

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyupark._constants import (  # noqa: E402
    DEVICE_ONLINE,
    TOPIC_ADMIN_SLOT_OVERRIDE,
    TOPIC_DEVICE_STATUS,
    TOPIC_ENTRY_GATE_CONTROL,
    TOPIC_EXIT_GATE_CONTROL,
    TOPIC_GATE_CONTROL,
    TOPIC_GATE_STATUS,
    TOPIC_RESERVATION_STATUS,
    TOPIC_SLOT_STATUS,
)
from pyupark.config import UparkConfig  # noqa: E402

_LOG = logging.getLogger("pyupark.simulate_sensor")

_COMMAND_TOPICS = (
    TOPIC_RESERVATION_STATUS,
    TOPIC_ADMIN_SLOT_OVERRIDE,
    TOPIC_GATE_CONTROL,
    TOPIC_ENTRY_GATE_CONTROL,
    TOPIC_EXIT_GATE_CONTROL,
)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulate the uPark lot controller on the MQTT bus.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between sensor sweeps.",
    )
    parser.add_argument(
        "--occupancy",
        type=float,
        default=0.4,
        help="Probability that a slot is reported occupied.",
    )
    parser.add_argument(
        "--sweeps",
        type=int,
        default=0,
        help="Number of sweeps to publish (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible sweeps.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def build_sweep(slot_count: int, occupancy: float, rng: random.Random) -> str:
    """Sensor payload: free slot numbers, or ``FULL`` when none are free."""
    free = [n for n in range(1, slot_count + 1) if rng.random() >= occupancy]
    if not free:
        return "FULL"
    return ",".join(str(n) for n in free)


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = UparkConfig.from_env()
    rng = random.Random(args.seed)
    should_stop = False

    def stop_handler(_signum: int, _frame: Any) -> None:
        nonlocal should_stop
        should_stop = True

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.enable_logger(_LOG)
    if config.mqtt_tls:
        client.tls_set()

    def on_connect(
        c: mqtt.Client,
        _userdata: Any,
        _flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        _properties: mqtt.Properties | None,
    ) -> None:
        if reason_code.value != 0:
            print(f"[sim] MQTT connect failed: {reason_code}", file=sys.stderr)
            c.disconnect()
            return
        print(f"[sim] Connected to {config.mqtt_broker_host}:{config.mqtt_broker_port}")
        for suffix in _COMMAND_TOPICS:
            c.subscribe(config.topic(suffix), qos=0)
        c.publish(config.topic(TOPIC_DEVICE_STATUS), DEVICE_ONLINE)
        c.publish(config.topic(TOPIC_GATE_STATUS), "ENTRY:CLOSED")

    def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        text = msg.payload.decode("utf-8", errors="replace").strip()
        suffix = msg.topic[len(config.topic_prefix) :]
        print(f"[sim] <- {suffix}: {text}")

    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(config.mqtt_broker_host, config.mqtt_broker_port, keepalive=config.mqtt_keepalive)
    except OSError as exc:  # pragma: no cover - network/system interaction
        print(f"[sim] Connect failed: {exc}", file=sys.stderr)
        return 2

    published = 0
    client.loop_start()
    try:
        while not should_stop:
            payload = build_sweep(config.slot_count, args.occupancy, rng)
            client.publish(config.topic(TOPIC_SLOT_STATUS), payload)
            published += 1
            print(f"[sim] -> {TOPIC_SLOT_STATUS}: {payload}")
            if args.sweeps > 0 and published >= args.sweeps:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass
    finally:
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    print(f"[sim] Published {published} sweep(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
