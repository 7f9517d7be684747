"""
Booking lifecycle.

A transition runs in three steps while holding the booking's lock:

1. record a ``pending`` BookingEvent (the intent) and commit it;
2. perform the side effects: ledger calls, which are idempotent per booking and
   operation, and timer changes;
3. commit the new booking status together with the intent marked ``applied``.

An intent left unfinished by a crash or a processor outage is resumed before
any later event for the same booking is accepted, and periodically by the
background worker.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import config
from .errors import (
    ActorNotPermitted,
    BookingError,
    BookingNotFound,
    InvalidTransition,
    PaymentAmountMismatch,
    PaymentProcessorError,
)
from .ledger import EscrowLedger, utcnow
from .locks import BookingLocks
from .models import (
    AWAITING_ACCEPTANCE,
    CANCELLED_MANUAL,
    CANCELLED_TIMEOUT,
    COMPLETED,
    CONFIRMED,
    HELD,
    INTENT_APPLIED,
    INTENT_FAILED,
    INTENT_PENDING,
    INTENT_PENDING_RETRY,
    PENDING,
    RELEASED,
    UNFINISHED_INTENTS,
    Booking,
    BookingEvent,
)
from .notifications import TIMEOUT_MESSAGE, NotificationDispatcher
from .policies import CancellationPolicy, no_cancellation_fee
from .scheduler import TimeoutScheduler

logger = logging.getLogger(__name__)

# events
BOOKING_REQUESTED = "bookingRequested"
PAYMENT_CONFIRMED = "paymentConfirmed"
PROVIDER_ACCEPTED = "providerAccepted"
PROVIDER_DECLINED = "providerDeclined"
TIMEOUT_EXPIRED = "timeoutExpired"
SERVICE_COMPLETED = "serviceCompleted"
CUSTOMER_CANCELLED = "customerCancelled"

# actor roles
CUSTOMER = "customer"
PROVIDER = "provider"
SYSTEM = "system"

TRANSITIONS = {
    (PENDING, PAYMENT_CONFIRMED): AWAITING_ACCEPTANCE,
    (AWAITING_ACCEPTANCE, PROVIDER_ACCEPTED): CONFIRMED,
    (AWAITING_ACCEPTANCE, PROVIDER_DECLINED): CANCELLED_MANUAL,
    (AWAITING_ACCEPTANCE, TIMEOUT_EXPIRED): CANCELLED_TIMEOUT,
    (AWAITING_ACCEPTANCE, CUSTOMER_CANCELLED): CANCELLED_MANUAL,
    (CONFIRMED, SERVICE_COMPLETED): COMPLETED,
    (CONFIRMED, CUSTOMER_CANCELLED): CANCELLED_MANUAL,
}

CANCELLATION_REASONS = {
    CUSTOMER_CANCELLED: "customer_cancelled",
    PROVIDER_DECLINED: "provider_declined",
    TIMEOUT_EXPIRED: "acceptance_timeout",
}


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BookingStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: EscrowLedger,
        scheduler: TimeoutScheduler,
        locks: BookingLocks,
        notifier: NotificationDispatcher,
        cancellation_policy: CancellationPolicy = no_cancellation_fee,
        completion_roles: frozenset[str] | None = None,
        commission_rate=config.commission_rate,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.scheduler = scheduler
        self.locks = locks
        self.notifier = notifier
        self.cancellation_policy = cancellation_policy
        self.completion_roles = completion_roles or config.completion_roles()
        self.commission_rate = commission_rate
        self.clock = clock

    # ---- queries ----

    async def _load(self, db: AsyncSession, booking_id: str, for_update: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.booking_id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        booking = (await db.execute(stmt)).scalar_one_or_none()
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    async def get_booking(self, booking_id: str) -> Booking:
        async with self.session_factory() as db:
            return await self._load(db, booking_id)

    async def list_bookings(
        self,
        customer_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[Booking]:
        stmt = select(Booking)
        if customer_id:
            stmt = stmt.where(Booking.customer_id == customer_id)
        if provider_id:
            stmt = stmt.where(Booking.provider_id == provider_id)
        if status:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.requested_at.desc(), Booking.id.desc()).limit(limit)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def payment_status(self, booking_id: str) -> dict:
        async with self.session_factory() as db:
            booking = await self._load(db, booking_id)
            escrow = await self.ledger.get(db, booking_id)
            pending = await self._unfinished(db, booking_id)

        auto_refund_at = None
        if booking.status == AWAITING_ACCEPTANCE:
            auto_refund_at = as_utc(booking.awaiting_acceptance_deadline)

        if pending:
            message = "Payment pending: the transfer will be retried automatically"
        elif booking.status == CANCELLED_TIMEOUT:
            message = TIMEOUT_MESSAGE
        elif escrow is None:
            message = "Awaiting payment"
        elif escrow.state == HELD:
            message = "Payment held securely in escrow until the service is completed"
        elif escrow.state == RELEASED:
            message = "Payment released to the provider"
        elif escrow.retained_amount:
            message = "Booking cancelled, refunded minus the cancellation fee"
        else:
            message = "Booking cancelled, fully refunded"

        return {
            "booking": booking,
            "escrow": escrow,
            "auto_refund_at": auto_refund_at,
            "payment_pending": bool(pending),
            "message": message,
        }

    # ---- creation ----

    async def create_booking(
        self,
        customer_id: str,
        service_type: str,
        budget_amount: int,
        provider_id: str | None = None,
        location: str | None = None,
        description: str | None = None,
    ) -> Booking:
        if budget_amount < 0:
            raise ValueError("budget_amount must be non-negative")

        now = self.clock()
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            customer_id=customer_id,
            provider_id=provider_id,
            service_type=service_type,
            location=location,
            description=description,
            budget_amount=budget_amount,
            status=PENDING,
            requested_at=now,
            updated_at=now,
            customer_rated=False,
            provider_rated=False,
        )
        async with self.session_factory() as db:
            db.add(booking)
            await db.commit()

        logger.info(
            "booking_created",
            extra={"booking_id": booking.booking_id, "customer_id": customer_id, "budget_amount": budget_amount},
        )
        await self.notifier.booking_transitioned(booking, BOOKING_REQUESTED)
        return booking

    # ---- transitions ----

    async def transition(
        self,
        booking_id: str,
        event: str,
        actor_role: str,
        actor_id: str | None = None,
        reference: str | None = None,
        amount: int | None = None,
    ) -> Booking:
        async with self.locks.hold(booking_id):
            async with self.session_factory() as db:
                booking = await self._load(db, booking_id, for_update=True)
                await self._resume(db, booking)
                self._check_actor(booking, event, actor_role, actor_id)

                if await self._already_applied(db, booking, event, reference):
                    logger.info(
                        "booking_event_duplicate",
                        extra={"booking_id": booking_id, "event": event, "status": booking.status},
                    )
                    return booking

                target = TRANSITIONS.get((booking.status, event))
                if target is None:
                    self._reject(booking, event, actor_role)

                if booking.status == AWAITING_ACCEPTANCE:
                    await self._arbitrate_window(db, booking, event, actor_role)

                payload = await self._intent_payload(db, booking, event, reference, amount)
                return await self._record_and_apply(db, booking, event, target, actor_role, actor_id, reference, payload)

    async def expire(self, booking_id: str) -> Booking:
        return await self.transition(booking_id, TIMEOUT_EXPIRED, SYSTEM)

    def _reject(self, booking: Booking, event: str, actor_role: str, reason: str | None = None):
        logger.warning(
            "booking_transition_rejected",
            extra={
                "booking_id": booking.booking_id,
                "current_status": booking.status,
                "event": event,
                "actor_role": actor_role,
                "reason": reason,
            },
        )
        raise InvalidTransition(booking.booking_id, booking.status, event, reason)

    def _allowed_roles(self, event: str) -> frozenset[str]:
        if event in (PAYMENT_CONFIRMED, TIMEOUT_EXPIRED):
            return frozenset({SYSTEM})
        if event in (PROVIDER_ACCEPTED, PROVIDER_DECLINED):
            return frozenset({PROVIDER})
        if event == CUSTOMER_CANCELLED:
            return frozenset({CUSTOMER})
        return self.completion_roles

    def _check_actor(self, booking: Booking, event: str, actor_role: str, actor_id: str | None):
        allowed = self._allowed_roles(event)
        permitted = actor_role in allowed
        if permitted and actor_id is not None:
            if actor_role == CUSTOMER:
                permitted = actor_id == booking.customer_id
            elif actor_role == PROVIDER and booking.provider_id:
                permitted = actor_id == booking.provider_id

        if not permitted:
            logger.warning(
                "booking_actor_not_permitted",
                extra={"booking_id": booking.booking_id, "event": event, "actor_role": actor_role, "actor_id": actor_id},
            )
            raise ActorNotPermitted(
                f"{actor_role} is not allowed to trigger {event} on this booking",
                details={"booking_id": booking.booking_id, "event": event, "allowed_roles": sorted(allowed)},
            )

    async def _arbitrate_window(self, db: AsyncSession, booking: Booking, event: str, actor_role: str):
        deadline = as_utc(booking.awaiting_acceptance_deadline)
        elapsed = deadline is not None and self.clock() >= deadline

        if event == TIMEOUT_EXPIRED:
            if not elapsed:
                self._reject(booking, event, actor_role, "acceptance window still open")
            return

        if elapsed:
            # the timer may not have fired yet, but the window is over: the timeout wins
            await self.scheduler.cancel(booking.booking_id)
            await self._record_and_apply(
                db, booking, TIMEOUT_EXPIRED, CANCELLED_TIMEOUT, SYSTEM, None, None, {}
            )
            self._reject(booking, event, actor_role, "acceptance window elapsed")

    async def _already_applied(self, db: AsyncSession, booking: Booking, event: str, reference: str | None) -> bool:
        stmt = (
            select(BookingEvent.id)
            .where(BookingEvent.booking_id == booking.booking_id)
            .where(BookingEvent.event == event)
            .where(BookingEvent.status == INTENT_APPLIED)
            .limit(1)
        )
        if (await db.execute(stmt)).first() is None:
            return False

        if event == PAYMENT_CONFIRMED and reference and reference != booking.payment_reference:
            self._reject(booking, event, SYSTEM, "booking already paid with a different reference")
        return True

    async def _intent_payload(
        self,
        db: AsyncSession,
        booking: Booking,
        event: str,
        reference: str | None,
        amount: int | None,
    ) -> dict:
        if event == PAYMENT_CONFIRMED:
            if not reference:
                self._reject(booking, event, SYSTEM, "a processor reference is required")
            if amount is not None and amount != booking.budget_amount:
                logger.warning(
                    "payment_amount_mismatch",
                    extra={"booking_id": booking.booking_id, "amount": amount, "budget_amount": booking.budget_amount},
                )
                raise PaymentAmountMismatch(
                    "Paid amount does not match the booking budget",
                    details={"booking_id": booking.booking_id, "amount": amount, "budget_amount": booking.budget_amount},
                )
            other = await db.execute(
                select(Booking.booking_id)
                .where(Booking.payment_reference == reference)
                .where(Booking.booking_id != booking.booking_id)
            )
            if other.first() is not None:
                self._reject(booking, event, SYSTEM, "processor reference already used by another booking")
            # fixed for the lifetime of this booking's escrow
            return {"amount": booking.budget_amount, "commission_rate": str(self.commission_rate())}

        if event == CUSTOMER_CANCELLED and booking.status == CONFIRMED:
            escrow = await self.ledger.get(db, booking.booking_id)
            retained = self.cancellation_policy(booking, escrow) if escrow is not None else 0
            total = escrow.total_amount if escrow is not None else 0
            return {"retained_amount": max(0, min(int(retained), total))}

        return {}

    async def _record_and_apply(
        self,
        db: AsyncSession,
        booking: Booking,
        event: str,
        target: str,
        actor_role: str,
        actor_id: str | None,
        reference: str | None,
        payload: dict,
    ) -> Booking:
        intent = BookingEvent(
            booking_id=booking.booking_id,
            event=event,
            actor_role=actor_role,
            actor_id=actor_id,
            reference=reference,
            from_status=booking.status,
            to_status=target,
            payload=payload,
            status=INTENT_PENDING,
            attempts=0,
            created_at=self.clock(),
        )
        db.add(intent)
        await db.commit()
        return await self._apply(db, booking, intent)

    async def _apply(self, db: AsyncSession, booking: Booking, intent: BookingEvent) -> Booking:
        intent.attempts = (intent.attempts or 0) + 1
        extra = {"booking_id": booking.booking_id, "event": intent.event, "attempt": intent.attempts}

        try:
            escrow = await self._side_effects(db, booking, intent)
        except PaymentProcessorError as e:
            intent.status = INTENT_PENDING_RETRY if e.retryable else INTENT_FAILED
            intent.last_error = e.message
            await db.commit()
            logger.error("booking_side_effect_payment_failed", extra={**extra, "error": e.message})
            raise
        except BookingError as e:
            intent.status = INTENT_FAILED
            intent.last_error = e.message
            await db.commit()
            logger.error("booking_side_effect_failed", extra={**extra, "error": e.message, "code": e.code})
            raise

        now = self.clock()
        event = intent.event
        booking.status = intent.to_status
        booking.updated_at = now

        if event == PAYMENT_CONFIRMED:
            booking.payment_reference = intent.reference
            booking.awaiting_acceptance_deadline = as_utc(escrow.held_at) + config.ACCEPTANCE_WINDOW
        elif event == PROVIDER_ACCEPTED:
            booking.accepted_at = max(now, as_utc(booking.requested_at))
            if not booking.provider_id:
                booking.provider_id = intent.actor_id
        elif event == SERVICE_COMPLETED:
            booking.completed_at = max(now, as_utc(booking.accepted_at))
        elif event in CANCELLATION_REASONS:
            booking.cancelled_at = now
            booking.cancellation_reason = CANCELLATION_REASONS[event]

        intent.status = INTENT_APPLIED
        intent.applied_at = now
        intent.last_error = None
        await db.commit()

        logger.info(
            "booking_transitioned",
            extra={**extra, "from_status": intent.from_status, "to_status": intent.to_status},
        )

        if event == PAYMENT_CONFIRMED:
            await self.scheduler.start(booking.booking_id, as_utc(booking.awaiting_acceptance_deadline))

        await self.notifier.booking_transitioned(booking, event)
        return booking

    async def _side_effects(self, db: AsyncSession, booking: Booking, intent: BookingEvent):
        booking_id = booking.booking_id
        event = intent.event
        payload = intent.payload or {}

        if event == PAYMENT_CONFIRMED:
            escrow = await self.ledger.get(db, booking_id)
            if escrow is None:
                escrow = await self.ledger.hold(
                    db,
                    booking_id,
                    int(payload["amount"]),
                    Decimal(payload["commission_rate"]),
                    intent.reference,
                )
            return escrow

        if event == PROVIDER_ACCEPTED:
            await self.scheduler.cancel(booking_id)
            return None

        if event in (TIMEOUT_EXPIRED, PROVIDER_DECLINED) or (
            event == CUSTOMER_CANCELLED and intent.from_status == AWAITING_ACCEPTANCE
        ):
            await self.scheduler.cancel(booking_id)
            return await self.ledger.refund(db, booking_id)

        if event == CUSTOMER_CANCELLED:
            return await self.ledger.refund(db, booking_id, retained_amount=int(payload.get("retained_amount", 0)))

        if event == SERVICE_COMPLETED:
            return await self.ledger.release(db, booking_id, booking.provider_id)

        return None

    # ---- recovery ----

    async def _unfinished(self, db: AsyncSession, booking_id: str) -> list[BookingEvent]:
        stmt = (
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .where(BookingEvent.status.in_(UNFINISHED_INTENTS))
            .order_by(BookingEvent.id)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _resume(self, db: AsyncSession, booking: Booking):
        for intent in await self._unfinished(db, booking.booking_id):
            if intent.from_status != booking.status:
                intent.status = INTENT_FAILED
                intent.last_error = f"booking moved to {booking.status} before the intent finished"
                await db.commit()
                logger.error(
                    "booking_intent_abandoned",
                    extra={"booking_id": booking.booking_id, "event": intent.event, "status": booking.status},
                )
                continue
            logger.info(
                "booking_intent_resumed",
                extra={"booking_id": booking.booking_id, "event": intent.event, "attempts": intent.attempts},
            )
            await self._apply(db, booking, intent)

    async def resume_pending(self) -> int:
        async with self.session_factory() as db:
            res = await db.execute(
                select(BookingEvent.booking_id)
                .where(BookingEvent.status.in_(UNFINISHED_INTENTS))
                .distinct()
            )
            booking_ids = [row[0] for row in res.all()]

        resumed = 0
        for booking_id in booking_ids:
            try:
                async with self.locks.hold(booking_id):
                    async with self.session_factory() as db:
                        booking = await self._load(db, booking_id, for_update=True)
                        await self._resume(db, booking)
                resumed += 1
            except BookingError as e:
                logger.warning(
                    "booking_intent_resume_failed",
                    extra={"booking_id": booking_id, "error": e.message, "code": e.code},
                )
        return resumed

    async def recover(self) -> dict:
        """
        Startup sweep: finish interrupted transitions, expire bookings whose
        acceptance window ran out while nothing was watching, and re-register
        timers for the rest from their persisted deadlines.
        """
        resumed = await self.resume_pending()

        async with self.session_factory() as db:
            res = await db.execute(
                select(Booking.booking_id, Booking.awaiting_acceptance_deadline)
                .where(Booking.status == AWAITING_ACCEPTANCE)
            )
            waiting = [(booking_id, as_utc(deadline)) for booking_id, deadline in res.all()]

        now = self.clock()
        expired = restored = 0
        for booking_id, deadline in waiting:
            if deadline is None:
                logger.error("booking_missing_deadline", extra={"booking_id": booking_id})
                continue
            if deadline <= now:
                await self.scheduler.cancel(booking_id)
                try:
                    await self.expire(booking_id)
                    expired += 1
                except BookingError as e:
                    logger.warning(
                        "booking_recovery_expire_failed",
                        extra={"booking_id": booking_id, "error": e.message, "code": e.code},
                    )
                    await self.scheduler.restore(booking_id, deadline)
            elif await self.scheduler.restore(booking_id, deadline):
                restored += 1

        summary = {"resumed": resumed, "expired": expired, "restored": restored}
        logger.info("booking_recovery_complete", extra=summary)
        return summary
