from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable

from .models import Booking, EscrowTransaction

# (booking, escrow) -> minor units the platform keeps when a confirmed booking is cancelled
CancellationPolicy = Callable[[Booking, EscrowTransaction], int]


def no_cancellation_fee(booking: Booking, escrow: EscrowTransaction) -> int:
    return 0


def percentage_cancellation_fee(rate: Decimal | str) -> CancellationPolicy:
    fee_rate = Decimal(rate)
    if fee_rate < 0 or fee_rate > 1:
        raise ValueError("cancellation fee rate must be in [0, 1]")

    def policy(booking: Booking, escrow: EscrowTransaction) -> int:
        fee = (Decimal(escrow.total_amount) * fee_rate).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return int(fee)

    return policy


def cancellation_policy_from_rate(raw: str | None) -> CancellationPolicy:
    """Policy for a CANCELLATION_FEE_RATE setting; unset or zero means no fee."""
    if not raw:
        return no_cancellation_fee
    try:
        rate = Decimal(raw)
        if rate == 0:
            return no_cancellation_fee
        return percentage_cancellation_fee(rate)
    except (InvalidOperation, ValueError):
        raise RuntimeError(f"CANCELLATION_FEE_RATE must be a decimal in [0, 1], got {raw!r}")
