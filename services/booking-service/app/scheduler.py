import logging
from datetime import datetime
from typing import Awaitable, Callable

from .errors import BookingError, DuplicateTimer, InvalidTransition

logger = logging.getLogger(__name__)

EXPIRY_ZSET = "acceptance_deadlines"


class TimeoutScheduler:
    """
    One acceptance timer per booking, kept in a Redis sorted set scored by the
    deadline (epoch seconds).

    Cancellation and expiry both race on ZREM of the same member, so exactly one
    of them takes effect for a given timer.
    """

    def __init__(self, redis_client, key: str = EXPIRY_ZSET, batch_size: int = 50):
        self.redis = redis_client
        self.key = key
        self.batch_size = batch_size

    async def start(self, booking_id: str, deadline: datetime) -> None:
        added = await self.redis.zadd(self.key, {booking_id: deadline.timestamp()}, nx=True)
        if not added:
            logger.error("acceptance_timer_duplicate", extra={"booking_id": booking_id})
            raise DuplicateTimer(booking_id)
        logger.info(
            "acceptance_timer_started",
            extra={"booking_id": booking_id, "deadline": deadline.isoformat()},
        )

    async def restore(self, booking_id: str, deadline: datetime) -> bool:
        """Re-register a persisted deadline; a timer that is already present is left alone."""
        return bool(await self.redis.zadd(self.key, {booking_id: deadline.timestamp()}, nx=True))

    async def cancel(self, booking_id: str) -> bool:
        """Returns False when there was nothing to cancel (never started, or already fired)."""
        removed = bool(await self.redis.zrem(self.key, booking_id))
        if removed:
            logger.info("acceptance_timer_cancelled", extra={"booking_id": booking_id})
        return removed

    async def deadline_of(self, booking_id: str) -> float | None:
        return await self.redis.zscore(self.key, booking_id)

    async def claim_due(self, now: datetime) -> list[str]:
        due = await self.redis.zrangebyscore(self.key, 0, now.timestamp(), start=0, num=self.batch_size)
        claimed = []
        for booking_id in due:
            # losing this ZREM means a concurrent cancel (or another worker) won
            if await self.redis.zrem(self.key, booking_id):
                claimed.append(booking_id)
        return claimed

    async def fire_due(self, now: datetime, on_expired: Callable[[str], Awaitable[object]]) -> list[str]:
        fired = []
        for booking_id in await self.claim_due(now):
            try:
                await on_expired(booking_id)
            except InvalidTransition as e:
                logger.info(
                    "acceptance_timer_stale",
                    extra={"booking_id": booking_id, "current_status": e.current_status},
                )
                continue
            except BookingError as e:
                logger.warning(
                    "acceptance_timer_expiry_failed",
                    extra={"booking_id": booking_id, "error": e.message, "code": e.code},
                )
                await self._put_back(booking_id, now)
                continue
            except Exception:
                # database or broker outage: the claim must survive for the next tick
                logger.exception("acceptance_timer_expiry_error", extra={"booking_id": booking_id})
                await self._put_back(booking_id, now)
                continue
            fired.append(booking_id)
        return fired

    async def _put_back(self, booking_id: str, now: datetime) -> None:
        await self.redis.zadd(self.key, {booking_id: now.timestamp()}, nx=True)
