import asyncio
import logging
from types import SimpleNamespace

import redis.asyncio as redis
from fastapi import FastAPI

from . import config
from .breaker import ProcessorBreaker
from .expiry_worker import expiry_loop
from .ledger import EscrowLedger
from .locks import BookingLocks
from .middleware import RequestLoggingMiddleware
from .notifications import NotificationDispatcher, RabbitPublisher
from .policies import cancellation_policy_from_rate
from .processor import PaymentProcessorClient
from .rating import RatingGate
from .routes import router
from .scheduler import TimeoutScheduler
from .state_machine import BookingStateMachine

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def build_components() -> SimpleNamespace:
    from .db import SessionLocal

    redis_client = redis.from_url(config.require("REDIS_URL"), decode_responses=True)
    publisher = RabbitPublisher(config.RABBIT_URL)
    notifier = NotificationDispatcher(publisher)

    breaker = ProcessorBreaker(redis_client, "payment-processor", failure_threshold=5, reset_timeout_seconds=15)
    processor = PaymentProcessorClient(
        config.require("PAYMENT_PROCESSOR_URL"),
        breaker,
        api_key=config.PAYMENT_PROCESSOR_API_KEY,
        timeout=config.PAYMENT_PROCESSOR_TIMEOUT,
        max_attempts=config.PAYMENT_MAX_ATTEMPTS,
        backoff_seconds=config.PAYMENT_BACKOFF_SECONDS,
    )
    ledger = EscrowLedger(processor, redis_client, config.CURRENCY)
    scheduler = TimeoutScheduler(redis_client)
    locks = BookingLocks(redis_client, ttl_s=config.BOOKING_LOCK_TTL)

    return SimpleNamespace(
        redis=redis_client,
        publisher=publisher,
        breaker=breaker,
        machine=BookingStateMachine(
            SessionLocal,
            ledger,
            scheduler,
            locks,
            notifier,
            cancellation_policy=cancellation_policy_from_rate(config.CANCELLATION_FEE_RATE),
        ),
        rating_gate=RatingGate(SessionLocal, locks, notifier),
    )


def create_app(components: SimpleNamespace | None = None, run_workers: bool = True) -> FastAPI:
    app = FastAPI(title="Booking Service")
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)

    app.state.components = components
    if components is not None:
        app.state.machine = components.machine
        app.state.rating_gate = components.rating_gate

    stop_event = asyncio.Event()
    worker: dict = {}

    @app.get("/health")
    async def health():
        c = app.state.components
        return {
            "status": "ok",
            "service": "booking-service",
            "events_enabled": c.publisher.enabled if c else False,
            "payment_processor": await c.breaker.status() if c else None,
        }

    @app.on_event("startup")
    async def startup():
        if app.state.components is None:
            app.state.components = build_components()
            app.state.machine = app.state.components.machine
            app.state.rating_gate = app.state.components.rating_gate

        c = app.state.components
        # never crash the service if RabbitMQ is temporarily unavailable
        try:
            await c.publisher.connect()
        except Exception as e:
            logger.warning("rabbitmq_unavailable_at_startup: %s", e)

        if run_workers:
            await c.machine.recover()
            worker["task"] = asyncio.create_task(
                expiry_loop(c.machine, stop_event, poll_seconds=config.EXPIRY_POLL_SECONDS)
            )

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()
        task = worker.get("task")
        if task:
            await task
        c = app.state.components
        if c is not None:
            await c.publisher.close()

    return app


app = create_app()
