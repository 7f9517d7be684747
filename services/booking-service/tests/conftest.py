import asyncio
import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import respx
from redis.exceptions import LockNotOwnedError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("COMMISSION_RATE", "0.15")

from shared.database import Base

from app.breaker import ProcessorBreaker
from app.ledger import EscrowLedger
from app.locks import BookingLocks
from app.notifications import NotificationDispatcher
from app.processor import PaymentProcessorClient
from app.rating import RatingGate
from app.scheduler import TimeoutScheduler
from app.state_machine import PAYMENT_CONFIRMED, SYSTEM, BookingStateMachine

PROCESSOR_URL = "https://processor.test"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _RedisStub:
    """In-memory subset of redis.asyncio used by the booking service."""

    def __init__(self):
        self.kv = {}
        self.zsets = {}
        self.extensions = []

    async def get(self, key):
        return self.kv.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.kv:
            return None
        self.kv[key] = str(value)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.kv.pop(key, None) is not None)
            removed += int(self.zsets.pop(key, None) is not None)
        return removed

    async def exists(self, key):
        return int(key in self.kv or key in self.zsets)

    async def incr(self, key):
        value = int(self.kv.get(key, 0)) + 1
        self.kv[key] = str(value)
        return value

    async def expire(self, key, seconds):
        return key in self.kv

    async def zadd(self, key, mapping, nx=False):
        zset = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in zset:
                continue
            added += int(member not in zset)
            zset[member] = float(score)
        return added

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def zrangebyscore(self, key, min, max, start=None, num=None):
        items = sorted(
            (score, member) for member, score in self.zsets.get(key, {}).items() if min <= score <= max
        )
        members = [member for _, member in items]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    def lock(self, name, **kwargs):
        return _LockStub(self, name, **kwargs)

    def pipeline(self):
        return _PipelineStub(self)


class _LockStub:
    """Owner-token semantics of redis.asyncio.lock.Lock over the stub's keys."""

    def __init__(self, redis, name, timeout=None, sleep=0.1, blocking_timeout=None, thread_local=True):
        self.redis = redis
        self.name = name
        self.sleep = sleep
        self.blocking_timeout = blocking_timeout
        self.token = None

    async def acquire(self):
        token = uuid.uuid4().hex
        deadline = time.monotonic() + (self.blocking_timeout or 0)
        while True:
            if await self.redis.set(self.name, token, nx=True):
                self.token = token
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.sleep)

    async def extend(self, additional_time, replace_ttl=False):
        if self.redis.kv.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot extend a lock that's no longer owned")
        self.redis.extensions.append(self.name)
        return True

    async def release(self):
        token, self.token = self.token, None
        if self.redis.kv.get(self.name) != token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.redis.kv[self.name]


class _PipelineStub:
    def __init__(self, redis):
        self.redis = redis
        self.calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class _RecordingPublisher:
    enabled = True

    def __init__(self):
        self.messages = []

    async def connect(self):
        return None

    async def publish(self, routing_key, body):
        self.messages.append((routing_key, json.loads(body)))

    async def close(self):
        return None

    def routing_keys(self):
        return [rk for rk, _ in self.messages]


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return _Clock(START)


@pytest.fixture
def redis_stub():
    return _RedisStub()


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def processor_api():
    with respx.mock(base_url=PROCESSOR_URL, assert_all_called=False) as router:
        router.post("/escrow/holds", name="hold").respond(200, json={"status": "held"})
        router.post("/escrow/releases", name="release").respond(200, json={"status": "released"})
        router.post("/escrow/refunds", name="refund").respond(200, json={"status": "refunded"})
        yield router


@pytest.fixture
def publisher():
    return _RecordingPublisher()


@pytest.fixture
def components(session_factory, redis_stub, clock, processor_api, publisher, monkeypatch):
    monkeypatch.setenv("COMMISSION_RATE", "0.15")

    notifier = NotificationDispatcher(publisher)
    breaker = ProcessorBreaker(redis_stub, "payment-processor", failure_threshold=50)
    processor = PaymentProcessorClient(PROCESSOR_URL, breaker, api_key="sk_test", max_attempts=3, backoff_seconds=0)
    ledger = EscrowLedger(processor, redis_stub, "NGN", clock=clock)
    scheduler = TimeoutScheduler(redis_stub)
    locks = BookingLocks(redis_stub, ttl_s=30, acquire_timeout_s=2.0, poll_s=0.01)
    machine = BookingStateMachine(
        session_factory,
        ledger,
        scheduler,
        locks,
        notifier,
        completion_roles=frozenset({"customer", "provider"}),
        clock=clock,
    )
    return SimpleNamespace(
        redis=redis_stub,
        publisher=publisher,
        breaker=breaker,
        processor=processor,
        ledger=ledger,
        scheduler=scheduler,
        locks=locks,
        machine=machine,
        rating_gate=RatingGate(session_factory, locks, notifier, clock=clock),
    )


@pytest.fixture
def machine(components):
    return components.machine


@pytest.fixture
def make_booking(machine):
    async def _make(budget_amount=10000, provider_id="prov-1", customer_id="cust-1", paid=False, reference=None):
        booking = await machine.create_booking(
            customer_id=customer_id,
            service_type="plumbing",
            budget_amount=budget_amount,
            provider_id=provider_id,
            location="Wuse 2, Abuja",
            description="Leaking kitchen sink",
        )
        if paid:
            booking = await machine.transition(
                booking.booking_id,
                PAYMENT_CONFIRMED,
                SYSTEM,
                reference=reference or f"psk_{booking.booking_id[:8]}",
            )
        return booking

    return _make
