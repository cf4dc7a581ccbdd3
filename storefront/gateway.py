import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront import config
from storefront.models import PaymentMethod

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The gateway could not be reached or answered with an error."""


@dataclass
class PayerInfo:
    user_id: int
    name: Optional[str] = None
    number: Optional[str] = None


@dataclass
class PaymentInitiation:
    success: bool
    redirect_url: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway:
    """Client for a payment-initiation endpoint.

    Each attempt is bounded by ``timeout``; transport errors and timeouts are
    retried up to ``max_attempts`` times with exponential backoff. Anything
    still failing after that raises PaymentGatewayError.
    """

    def __init__(self, name: str, initiate_url: str, timeout: float = config.PAYMENT_TIMEOUT_SECONDS,
                 max_attempts: int = config.PAYMENT_MAX_ATTEMPTS, backoff: float = config.PAYMENT_BACKOFF_SECONDS,
                 client: httpx.AsyncClient = None):
        self.name = name
        self.initiate_url = initiate_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.client = client or httpx.AsyncClient()

    async def _post(self, payload: dict) -> httpx.Response:
        return await asyncio.wait_for(self.client.post(self.initiate_url, json=payload), timeout=self.timeout)

    async def initiate(self, order_ref: str, amount: Decimal, payer: PayerInfo) -> PaymentInitiation:
        payload = {
            "transactionId": order_ref,
            "MUID": str(payer.user_id),
            "name": payer.name,
            "number": payer.number,
            "amount": str(amount),
        }
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=10 * self.backoff),
            retry=retry_if_exception_type((httpx.TransportError, asyncio.TimeoutError)),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._post(payload)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error("%s initiation for %s failed after %d attempts: %r", self.name, order_ref, self.max_attempts, cause)
            raise PaymentGatewayError(f"{self.name} unreachable") from cause

        if response.status_code >= 400:
            logger.error("%s initiation for %s returned HTTP %s", self.name, order_ref, response.status_code)
            raise PaymentGatewayError(f"{self.name} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentGatewayError(f"{self.name} returned a non-JSON body") from exc

        redirect_url = data.get("redirectUrl") or data.get("phonePeUrl")
        if not data.get("success") or not redirect_url:
            logger.warning("%s declined initiation for %s: %s", self.name, order_ref, data.get("message"))
            return PaymentInitiation(success=False, message=data.get("message"))
        return PaymentInitiation(success=True, redirect_url=redirect_url)

    async def close(self):
        await self.client.aclose()


def build_gateways() -> dict:
    urls = {
        PaymentMethod.PHONEPE: config.PHONEPE_INITIATE_URL,
        PaymentMethod.RAZORPAY: config.RAZORPAY_INITIATE_URL,
    }
    return {method: PaymentGateway(method.value, url) for method, url in urls.items() if url}
