import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError, LockNotOwnedError

from .errors import BookingBusy

logger = logging.getLogger(__name__)


def _lock_key(booking_id: str) -> str:
    return f"booking:{booking_id}:mutex"


class BookingLocks:
    """
    Single writer per booking.

    An asyncio.Lock serializes coroutines of this process; a redis-py Lock
    serializes processes. While the section runs, a heartbeat keeps pushing the
    Redis expiry forward, so a slow processor call cannot outlive the mutex.
    Release is the Lock's atomic compare-and-delete on the owner token.
    """

    def __init__(self, redis_client, ttl_s: float = 30, acquire_timeout_s: float = 10.0, poll_s: float = 0.05):
        self.redis = redis_client
        self.ttl_s = ttl_s
        self.acquire_timeout_s = acquire_timeout_s
        self.poll_s = poll_s
        self._local: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _local_lock(self, booking_id: str) -> asyncio.Lock:
        lock = self._local.get(booking_id)
        if lock is None:
            lock = asyncio.Lock()
            self._local[booking_id] = lock
        return lock

    async def _heartbeat(self, booking_id: str, mutex) -> None:
        interval = self.ttl_s / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await mutex.extend(self.ttl_s, replace_ttl=True)
            except LockError:
                logger.error("booking_lock_lost", extra={"booking_id": booking_id})
                return

    @asynccontextmanager
    async def hold(self, booking_id: str) -> AsyncIterator[None]:
        async with self._local_lock(booking_id):
            mutex = self.redis.lock(
                _lock_key(booking_id),
                timeout=self.ttl_s,
                sleep=self.poll_s,
                blocking_timeout=self.acquire_timeout_s,
                thread_local=False,
            )
            if not await mutex.acquire():
                logger.warning("booking_lock_timeout", extra={"booking_id": booking_id})
                raise BookingBusy(
                    "Booking is being updated, try again",
                    details={"booking_id": booking_id},
                )

            heartbeat = asyncio.create_task(self._heartbeat(booking_id, mutex))
            try:
                yield
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
                try:
                    await mutex.release()
                except LockNotOwnedError:
                    # expired and possibly re-taken by another instance: leave it alone
                    logger.error("booking_lock_release_not_owned", extra={"booking_id": booking_id})
