import asyncio
import logging

import httpx

from shared.idempotency import idempotency_key

from .breaker import CircuitBreakerOpen, ProcessorBreaker
from .errors import PaymentProcessorError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# statuses worth retrying; any other 4xx is a permanent rejection
RETRYABLE_STATUS = {408, 409, 425, 429}


class PaymentProcessorClient:
    """
    Thin client for the processor's escrow API.

    Every call carries an ``Idempotency-Key`` derived from the booking id and the
    operation, so a retried request never moves money twice.
    """

    def __init__(
        self,
        base_url: str,
        breaker: ProcessorBreaker,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = 4,
        backoff_seconds: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    def _headers(self, key: str) -> dict:
        headers = {"Idempotency-Key": key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def hold(self, booking_id: str, reference: str, amount: int, currency: str) -> dict:
        return await self._post(
            "/escrow/holds",
            {"booking_id": booking_id, "reference": reference, "amount": amount, "currency": currency},
            idempotency_key(booking_id, "hold"),
        )

    async def release(
        self,
        booking_id: str,
        provider_id: str | None,
        provider_amount: int,
        commission_amount: int,
        currency: str,
    ) -> dict:
        return await self._post(
            "/escrow/releases",
            {
                "booking_id": booking_id,
                "provider_id": provider_id,
                "provider_amount": provider_amount,
                "commission_amount": commission_amount,
                "currency": currency,
            },
            idempotency_key(booking_id, "release"),
        )

    async def refund(self, booking_id: str, amount: int, retained_amount: int, currency: str) -> dict:
        return await self._post(
            "/escrow/refunds",
            {
                "booking_id": booking_id,
                "amount": amount,
                "retained_amount": retained_amount,
                "currency": currency,
            },
            idempotency_key(booking_id, "refund"),
        )

    async def _post(self, path: str, payload: dict, key: str) -> dict:
        url = f"{self.base_url}{path}"
        last_error = "unknown"
        retry_after = None

        for attempt in range(self.max_attempts):
            if attempt:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                # no point burning the remaining attempts against an open circuit
                last_error, retry_after = str(e), e.retry_after
                break

            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=self._headers(key))
            except httpx.TimeoutException:
                last_error = f"timeout calling {path}"
            except httpx.TransportError as e:
                last_error = f"transport error calling {path}: {e}"
            else:
                if resp.status_code < 500 and resp.status_code not in RETRYABLE_STATUS:
                    # the processor answered, so it is healthy even when it says no
                    await self.breaker.record_success()
                    if resp.is_success:
                        return resp.json() if resp.content else {}
                    raise PaymentProcessorError(
                        f"Processor rejected {path} with {resp.status_code}",
                        details={"idempotency_key": key, "status": resp.status_code, "body": resp.text},
                        retryable=False,
                    )
                last_error = f"{path} returned {resp.status_code}"

            await self.breaker.record_failure(last_error)
            logger.warning(
                "payment_processor_retry",
                extra={"idempotency_key": key, "attempt": attempt + 1, "error": last_error},
            )

        details = {"idempotency_key": key, "attempts": self.max_attempts, "error": last_error}
        if retry_after is not None:
            details["retry_after"] = round(retry_after, 1)
        raise PaymentProcessorError(
            "Payment pending: processor unavailable, the operation will be retried",
            details=details,
        )
