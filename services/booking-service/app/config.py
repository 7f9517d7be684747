import os
from datetime import timedelta
from decimal import Decimal, InvalidOperation

REDIS_URL = os.getenv("REDIS_URL")
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

CURRENCY = os.getenv("CURRENCY") or "NGN"

PAYMENT_PROCESSOR_URL = os.getenv("PAYMENT_PROCESSOR_URL")
PAYMENT_PROCESSOR_API_KEY = os.getenv("PAYMENT_PROCESSOR_API_KEY")
PAYMENT_PROCESSOR_TIMEOUT = float(os.getenv("PAYMENT_PROCESSOR_TIMEOUT") or 5.0)
PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS") or 4)
PAYMENT_BACKOFF_SECONDS = float(os.getenv("PAYMENT_BACKOFF_SECONDS") or 0.5)
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")

# fraction kept when a confirmed booking is cancelled, e.g. "0.10"
CANCELLATION_FEE_RATE = os.getenv("CANCELLATION_FEE_RATE")

BOOKING_LOCK_TTL = int(os.getenv("BOOKING_LOCK_TTL") or 30)
EXPIRY_POLL_SECONDS = float(os.getenv("EXPIRY_POLL_SECONDS") or 2.0)
LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

ACCEPTANCE_WINDOW = timedelta(hours=4)


def require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} environment variable is not set")
    return value


def commission_rate() -> Decimal:
    """
    Platform commission as a decimal fraction, e.g. "0.15".

    Read from the environment on every call; a hold captures the rate in force
    when its intent is recorded. There is no default.
    """
    raw = require("COMMISSION_RATE")
    try:
        rate = Decimal(raw)
    except InvalidOperation:
        raise RuntimeError(f"COMMISSION_RATE is not a decimal: {raw!r}")
    if rate < 0 or rate >= 1:
        raise RuntimeError(f"COMMISSION_RATE must be in [0, 1), got {raw}")
    return rate


def completion_roles() -> frozenset[str]:
    raw = os.getenv("COMPLETION_ROLES") or "customer,provider"
    return frozenset(r.strip().lower() for r in raw.split(",") if r.strip())
