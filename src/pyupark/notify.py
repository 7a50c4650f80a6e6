"""Notification fan-out.

Two outputs, both fed from reconciler output:

* live viewers get every accepted change record as a keyed upsert;
* the hardware unit gets the full reserved-set whenever it differs from
  what it was last sent, and again shortly after it reports ``ONLINE``.

State changes are persisted before anything is queued here. Delivery
happens from a FIFO outbox. Hardware sends get bounded retries; viewer
events get one attempt, so a change reaches a viewer at most once. A
delivery failure is logged and never reported back as a state-change
failure. A single
outbox keeps per-slot order intact.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from pyupark._constants import EVENT_SLOT_UPDATE, RESERVED_SET_EMPTY, TOPIC_RESERVATION_STATUS
from pyupark._redact import redact_for_log
from pyupark.models.slot import SlotChange

_logger = logging.getLogger(__name__)


class ViewerPublisher(Protocol):
    """Generic real-time channel towards live viewers."""

    async def publish(self, event: str, payload: Any) -> None: ...


class HardwareLink(Protocol):
    """Outbound side of the hardware message bus (topic suffix + text)."""

    async def send(self, topic_suffix: str, payload: str) -> None: ...


ViewerCallback = Callable[[str, Any], Awaitable[None] | None]


class ViewerHub:
    """In-process publish/subscribe hub for live viewers.

    Subscribers are plain or async callables receiving ``(event, payload)``.
    A failing subscriber does not affect the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[ViewerCallback] = []

    def subscribe(self, callback: ViewerCallback) -> Callable[[], None]:
        """Register *callback*; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return _unsubscribe

    async def publish(self, event: str, payload: Any) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                _logger.debug("Viewer subscriber failed for event=%s", event, exc_info=True)


def encode_reserved_set(slot_numbers: Iterable[int]) -> str:
    """``NONE`` or an ascending comma-separated list."""
    ordered = sorted(set(slot_numbers))
    if not ordered:
        return RESERVED_SET_EMPTY
    return ",".join(str(n) for n in ordered)


class _Kind(StrEnum):
    VIEWER = "viewer"
    HARDWARE = "hardware"
    RESERVED_SYNC = "reserved_sync"


@dataclass(frozen=True)
class _Outgoing:
    kind: _Kind
    name: str = ""
    payload: Any = None
    force: bool = False


class NotificationFanout:
    """Outbox feeding live viewers and the hardware unit.

    Parameters
    ----------
    viewers
        Live-viewer channel.
    hardware
        Hardware bus link, or ``None`` while no unit is connected.
    reserved_slots
        Async callable returning the currently reserved slot numbers.
    attempts
        Delivery attempts per item.
    retry_delay
        Seconds between attempts.
    resync_delay
        Seconds between a device ``ONLINE`` report and the reserved-set resend.
    """

    def __init__(
        self,
        viewers: ViewerPublisher,
        hardware: HardwareLink | None,
        reserved_slots: Callable[[], Awaitable[list[int]]],
        *,
        attempts: int = 3,
        retry_delay: float = 0.2,
        resync_delay: float = 2.0,
    ) -> None:
        self._viewers = viewers
        self._hardware = hardware
        self._reserved_slots = reserved_slots
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._resync_delay = resync_delay
        self._outbox: deque[_Outgoing] = deque()
        self._delivery_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task[None] | None = None
        self._timers: set[asyncio.Task[None]] = set()
        self._last_reserved: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return len(self._outbox)

    @property
    def last_reserved_payload(self) -> str | None:
        """Reserved-set payload most recently delivered to the hardware unit."""
        return self._last_reserved

    def set_hardware(self, hardware: HardwareLink | None) -> None:
        self._hardware = hardware

    def start(self) -> None:
        """Deliver queued items in the background."""
        if self.is_running:
            return
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="pyupark-fanout")

    async def stop(self) -> None:
        """Stop the worker and pending resync timers, then deliver what is left."""
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        worker = self._worker
        self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        await self.flush()

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.flush()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def _enqueue(self, item: _Outgoing) -> None:
        self._outbox.append(item)
        self._wakeup.set()

    def enqueue_changes(self, changes: Iterable[SlotChange]) -> None:
        """Queue change records for viewers and a reserved-set check for the unit."""
        queued = False
        for change in changes:
            self._enqueue(_Outgoing(kind=_Kind.VIEWER, name=EVENT_SLOT_UPDATE, payload=change.to_wire()))
            queued = True
        if queued:
            self._enqueue(_Outgoing(kind=_Kind.RESERVED_SYNC))

    def enqueue_viewer_event(self, event: str, payload: Any) -> None:
        self._enqueue(_Outgoing(kind=_Kind.VIEWER, name=event, payload=payload))

    def enqueue_hardware(self, topic_suffix: str, payload: str) -> None:
        self._enqueue(_Outgoing(kind=_Kind.HARDWARE, name=topic_suffix, payload=payload))

    def request_reserved_sync(self, *, force: bool = True) -> None:
        """Queue a reserved-set publish; *force* sends even if unchanged."""
        self._enqueue(_Outgoing(kind=_Kind.RESERVED_SYNC, force=force))

    def device_online(self) -> None:
        """Schedule the reserved-set resend after the unit came online."""
        timer = asyncio.get_running_loop().create_task(self._delayed_resync(), name="pyupark-resync")
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _delayed_resync(self) -> None:
        if self._resync_delay > 0:
            await asyncio.sleep(self._resync_delay)
        _logger.debug("Hardware unit online; resending reserved set")
        self.request_reserved_sync(force=True)
        if not self.is_running:
            await self.flush()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Deliver everything queued so far, in order."""
        async with self._delivery_lock:
            while self._outbox:
                item = self._outbox.popleft()
                await self._deliver(item)

    async def _deliver(self, item: _Outgoing) -> None:
        if item.kind is _Kind.RESERVED_SYNC:
            await self._deliver_reserved_set(force=item.force)
            return
        if item.kind is _Kind.VIEWER:
            _logger.debug("Viewer event %s payload=%s", item.name, redact_for_log(item.payload))
            # One attempt only: a publish that fails after sending must not repeat the change.
            await self._with_retries(lambda: self._viewers.publish(item.name, item.payload), item.name, attempts=1)
            return
        hardware = self._hardware
        if hardware is None:
            _logger.debug("No hardware link; dropping %s", item.name)
            return
        await self._with_retries(lambda: hardware.send(item.name, str(item.payload)), item.name)

    async def _deliver_reserved_set(self, *, force: bool) -> None:
        hardware = self._hardware
        if hardware is None:
            return
        try:
            payload = encode_reserved_set(await self._reserved_slots())
        except Exception:
            _logger.warning("Could not read reserved set for hardware sync", exc_info=True)
            return
        if not force and payload == self._last_reserved:
            return
        _logger.debug("Publishing reserved set to hardware: %s", payload)
        delivered = await self._with_retries(
            lambda: hardware.send(TOPIC_RESERVATION_STATUS, payload),
            TOPIC_RESERVATION_STATUS,
        )
        # On failure forget what was sent so the next check resends.
        self._last_reserved = payload if delivered else None

    async def _with_retries(
        self,
        send: Callable[[], Awaitable[None]],
        label: str,
        *,
        attempts: int | None = None,
    ) -> bool:
        limit = self._attempts if attempts is None else attempts
        for attempt in range(1, limit + 1):
            try:
                await send()
                return True
            except Exception:
                if attempt == limit:
                    _logger.warning("Giving up on %s after %d attempt(s)", label, attempt, exc_info=True)
                    return False
                _logger.debug("Delivery of %s failed (attempt %d)", label, attempt, exc_info=True)
                if self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
        return False
