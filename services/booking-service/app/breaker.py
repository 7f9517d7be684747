import logging
import time

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker OPEN for {name}, retry in {retry_after:.0f}s")
        self.retry_after = retry_after


class ProcessorBreaker:
    """
    Circuit breaker for the payment processor, shared by every booking-service
    instance through Redis.

    Only transient failures (timeouts, transport errors, 5xx and throttling) are
    recorded; a 4xx rejection says nothing about processor health. Failures are
    counted inside a rolling window. Once open, the breaker admits exactly one
    trial call after ``reset_timeout_seconds``. If it succeeds the circuit
    closes; if it fails the circuit reopens for another full timeout.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        failure_window_seconds: int = 60,
        clock=time.time,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self.clock = clock

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        return await self.redis.get(self._key("state")) or CLOSED

    async def retry_after(self) -> float:
        opened_at = await self.redis.get(self._key("opened_at"))
        if not opened_at:
            return 0.0
        return max(0.0, float(opened_at) + self.reset_timeout_seconds - self.clock())

    async def allow_request(self) -> None:
        state = await self.state()
        if state == CLOSED:
            return

        wait = await self.retry_after()
        if wait > 0:
            raise CircuitBreakerOpen(self.name, wait)

        # window elapsed (or HALF_OPEN): one caller gets the trial call
        if await self.redis.set(self._key("trial"), "1", nx=True, ex=self.reset_timeout_seconds):
            await self.redis.set(self._key("state"), HALF_OPEN)
            logger.info("processor_breaker_trial", extra={"breaker": self.name})
            return
        raise CircuitBreakerOpen(self.name, float(self.reset_timeout_seconds))

    async def record_success(self) -> None:
        if await self.state() != CLOSED:
            logger.info("processor_breaker_closed", extra={"breaker": self.name})
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), CLOSED)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        pipe.delete(self._key("trial"))
        await pipe.execute()

    async def record_failure(self, reason: str) -> None:
        await self.redis.set(self._key("last_error"), reason, ex=3600)

        if await self.state() == HALF_OPEN:
            await self._open(reason)
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self._open(reason)

    async def _open(self, reason: str) -> None:
        ttl = self.reset_timeout_seconds + self.failure_window_seconds
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), OPEN, ex=ttl)
        pipe.set(self._key("opened_at"), str(self.clock()), ex=ttl)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("trial"))
        await pipe.execute()
        logger.warning("processor_breaker_opened", extra={"breaker": self.name, "error": reason})

    async def status(self) -> dict:
        failures = await self.redis.get(self._key("failures"))
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
            "last_error": await self.redis.get(self._key("last_error")),
            "retry_after": round(await self.retry_after(), 1),
        }
