import asyncio
import logging

from .state_machine import BookingStateMachine

logger = logging.getLogger(__name__)


async def tick(machine: BookingStateMachine, now=None) -> dict:
    now = now or machine.clock()
    expired = await machine.scheduler.fire_due(now, machine.expire)
    resumed = await machine.resume_pending()
    return {"expired": expired, "resumed": resumed}


async def expiry_loop(machine: BookingStateMachine, stop_event: asyncio.Event, poll_seconds: float = 2.0):
    while not stop_event.is_set():
        try:
            result = await tick(machine)
            if result["expired"]:
                logger.info("acceptance_windows_expired", extra={"booking_ids": result["expired"]})
        except Exception:
            # redis or database hiccup: keep the worker alive, the next tick retries
            logger.exception("expiry_tick_failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            continue
