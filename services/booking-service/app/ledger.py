import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.idempotency import idempotency_key, is_processed, mark_processed

from .errors import AlreadyHeld, InvalidLedgerState
from .models import HELD, REFUNDED, RELEASED, Booking, EscrowTransaction
from .processor import PaymentProcessorClient

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_amount(total_amount: int, commission_rate: Decimal) -> tuple[int, int]:
    """
    Split a total in minor units into (provider_amount, commission_amount).

    The commission is rounded half-up to a whole minor unit and the provider
    gets the remainder, so the two parts always sum to the total.
    """
    if total_amount < 0:
        raise ValueError("total_amount must be non-negative")
    rate = Decimal(commission_rate)
    if rate < 0 or rate >= 1:
        raise ValueError("commission_rate must be in [0, 1)")
    commission = int((Decimal(total_amount) * rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return total_amount - commission, commission


class EscrowLedger:
    """Sole mutator of EscrowTransaction rows."""

    def __init__(self, processor: PaymentProcessorClient, redis_client, currency: str, clock=utcnow):
        self.processor = processor
        self.redis = redis_client
        self.currency = currency
        self.clock = clock

    async def get(self, db: AsyncSession, booking_id: str) -> EscrowTransaction | None:
        res = await db.execute(select(EscrowTransaction).where(EscrowTransaction.booking_id == booking_id))
        return res.scalar_one_or_none()

    async def hold(
        self,
        db: AsyncSession,
        booking_id: str,
        amount: int,
        commission_rate: Decimal,
        reference: str,
    ) -> EscrowTransaction:
        if await self.get(db, booking_id) is not None:
            logger.error("escrow_hold_rejected_already_held", extra={"booking_id": booking_id})
            raise AlreadyHeld(booking_id)

        provider_amount, commission_amount = split_amount(amount, commission_rate)

        key = idempotency_key(booking_id, "hold")
        if not await is_processed(self.redis, key):
            await self.processor.hold(booking_id, reference, amount, self.currency)
            await mark_processed(self.redis, key)

        tx = EscrowTransaction(
            booking_id=booking_id,
            total_amount=amount,
            commission_rate=Decimal(commission_rate),
            provider_amount=provider_amount,
            commission_amount=commission_amount,
            state=HELD,
            processor_reference=reference,
            held_at=self.clock(),
        )
        db.add(tx)
        await db.commit()

        logger.info(
            "escrow_held",
            extra={
                "booking_id": booking_id,
                "total_amount": amount,
                "provider_amount": provider_amount,
                "commission_amount": commission_amount,
            },
        )
        return tx

    async def release(self, db: AsyncSession, booking_id: str, provider_id: str | None) -> EscrowTransaction:
        tx = await self.get(db, booking_id)
        if tx is not None and tx.state == RELEASED:
            return tx
        if tx is None or tx.state != HELD:
            logger.error(
                "escrow_release_rejected",
                extra={"booking_id": booking_id, "state": tx.state if tx else None},
            )
            raise InvalidLedgerState(booking_id, "release", tx.state if tx else None)

        key = idempotency_key(booking_id, "release")
        if not await is_processed(self.redis, key):
            await self.processor.release(
                booking_id, provider_id, tx.provider_amount, tx.commission_amount, self.currency
            )
            await mark_processed(self.redis, key)

        tx.state = RELEASED
        tx.released_at = self.clock()
        await db.commit()

        logger.info(
            "escrow_released",
            extra={"booking_id": booking_id, "provider_amount": tx.provider_amount},
        )
        return tx

    async def refund(self, db: AsyncSession, booking_id: str, retained_amount: int = 0) -> EscrowTransaction:
        tx = await self.get(db, booking_id)
        if tx is not None and tx.state == REFUNDED:
            return tx
        if tx is None or tx.state != HELD:
            logger.error(
                "escrow_refund_rejected",
                extra={"booking_id": booking_id, "state": tx.state if tx else None},
            )
            raise InvalidLedgerState(booking_id, "refund", tx.state if tx else None)

        if retained_amount < 0 or retained_amount > tx.total_amount:
            raise ValueError(f"retained_amount {retained_amount} outside [0, {tx.total_amount}]")
        refund_amount = tx.total_amount - retained_amount

        key = idempotency_key(booking_id, "refund")
        if not await is_processed(self.redis, key):
            await self.processor.refund(booking_id, refund_amount, retained_amount, self.currency)
            await mark_processed(self.redis, key)

        tx.state = REFUNDED
        tx.refund_amount = refund_amount
        tx.retained_amount = retained_amount
        tx.refunded_at = self.clock()
        await db.commit()

        logger.info(
            "escrow_refunded",
            extra={"booking_id": booking_id, "refund_amount": refund_amount, "retained_amount": retained_amount},
        )
        return tx

    async def provider_earnings(self, db: AsyncSession, provider_id: str) -> dict:
        stmt = (
            select(
                EscrowTransaction.state,
                func.count(EscrowTransaction.id),
                func.coalesce(func.sum(EscrowTransaction.provider_amount), 0),
            )
            .join(Booking, Booking.booking_id == EscrowTransaction.booking_id)
            .where(Booking.provider_id == provider_id)
            .where(EscrowTransaction.state.in_((HELD, RELEASED)))
            .group_by(EscrowTransaction.state)
        )
        rows = (await db.execute(stmt)).all()
        totals = {state: (int(count), int(amount)) for state, count, amount in rows}
        released_jobs, released = totals.get(RELEASED, (0, 0))
        _, pending = totals.get(HELD, (0, 0))
        return {
            "provider_id": provider_id,
            "currency": self.currency,
            "total_earned": released,
            "pending": pending,
            "completed_jobs": released_jobs,
            "average_per_job": released // released_jobs if released_jobs else 0,
        }
