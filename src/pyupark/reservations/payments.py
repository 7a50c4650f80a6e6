"""Payment gateways.

The lifecycle manager only needs "charge this amount, tell me whether it
went through". :class:`MockPaymentGateway` stands in for a real provider;
:class:`HttpPaymentGateway` talks JSON over HTTP to one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from collections.abc import Callable
from typing import Any, Protocol

import aiohttp
from pydantic import Field, ValidationError

from pyupark._redact import redact_for_log
from pyupark.exceptions import UparkPaymentError
from pyupark.models._base import UparkBaseModel

_logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


class PaymentOutcome(UparkBaseModel):
    """Result of one charge attempt."""

    success: bool
    payment_id: str | None = None
    message: str = ""


class PaymentGateway(Protocol):
    async def charge(self, *, reservation_id: int, amount: int) -> PaymentOutcome: ...


def build_payment_id(now_ms: int, rng: random.Random) -> str:
    suffix = "".join(rng.choice(_ID_ALPHABET) for _ in range(9))
    return f"PAY_{now_ms}_{suffix}"


class MockPaymentGateway:
    """Approves a configurable share of charges.

    Pass a seeded ``random.Random`` (or a success rate of 0/1) for
    deterministic behaviour.
    """

    def __init__(
        self,
        *,
        success_rate: float = 0.9,
        rng: random.Random | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._success_rate = success_rate
        self._rng = rng or random.Random()
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    async def charge(self, *, reservation_id: int, amount: int) -> PaymentOutcome:
        approved = self._rng.random() < self._success_rate
        _logger.debug("Mock charge reservation=%s amount=%s approved=%s", reservation_id, amount, approved)
        if not approved:
            return PaymentOutcome(success=False, message="Payment failed. Please try again.")
        return PaymentOutcome(
            success=True,
            payment_id=build_payment_id(self._clock_ms(), self._rng),
            message="Payment successful",
        )


class _GatewayReply(UparkBaseModel):
    success: bool
    payment_id: str | None = None
    message: str = Field(default="")


class HttpPaymentGateway:
    """JSON-over-HTTP payment gateway client.

    POSTs ``{"reservationId": ..., "amount": ...}`` to *url* and expects
    ``{"success": bool, "paymentId": str | null, "message": str}`` back.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._external_session = session is not None
        self._http = session
        self._timeout = timeout

    async def __aenter__(self) -> HttpPaymentGateway:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
        self._http = None

    async def charge(self, *, reservation_id: int, amount: int) -> PaymentOutcome:
        if self._http is None:
            raise UparkPaymentError("Gateway not initialized. Use 'async with HttpPaymentGateway(...)'")

        body = json.dumps({"reservationId": reservation_id, "amount": amount})
        headers = {"content-type": "application/json; charset=UTF-8"}
        _logger.debug("POST %s reservation=%s", self._url, reservation_id)

        try:
            async with self._http.post(
                self._url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 500:
                    raise UparkPaymentError(
                        f"HTTP {resp.status} from payment gateway: {text[:200]}",
                        status_code=resp.status,
                    )
        except UparkPaymentError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise UparkPaymentError(f"Payment gateway request failed: {exc}") from exc

        try:
            reply = _GatewayReply.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise UparkPaymentError(
                f"Invalid reply from payment gateway: {text[:200]}",
                status_code=resp.status,
            ) from exc

        _logger.debug("Gateway reply %s", redact_for_log(reply.to_wire()))
        return PaymentOutcome(success=reply.success, payment_id=reply.payment_id, message=reply.message)


async def charge_bounded(
    gateway: PaymentGateway,
    *,
    reservation_id: int,
    amount: int,
    timeout: float,
) -> PaymentOutcome:
    """Charge with an upper bound on the wait."""
    try:
        return await asyncio.wait_for(gateway.charge(reservation_id=reservation_id, amount=amount), timeout)
    except TimeoutError as exc:
        raise UparkPaymentError(f"Payment gateway timed out after {timeout}s") from exc
