import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import ActorNotPermitted, AlreadyRated, BookingNotCompleted, BookingNotFound, InvalidScore
from .ledger import utcnow
from .locks import BookingLocks
from .models import COMPLETED, Booking, RatingRecord
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

RATER_ROLES = ("customer", "provider")
MIN_SCORE = 1
MAX_SCORE = 5


class RatingGate:
    """Customer and provider each rate the other once, and only after completion."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: BookingLocks,
        notifier: NotificationDispatcher,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.notifier = notifier
        self.clock = clock

    async def submit_rating(
        self,
        booking_id: str,
        rater_role: str,
        score: int,
        comment: str | None = None,
        rater_id: str | None = None,
    ) -> RatingRecord:
        if rater_role not in RATER_ROLES:
            raise ActorNotPermitted(
                f"Unknown rater role {rater_role}",
                details={"booking_id": booking_id, "rater_role": rater_role},
            )

        async with self.locks.hold(booking_id):
            async with self.session_factory() as db:
                res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
                booking = res.scalar_one_or_none()
                if booking is None:
                    raise BookingNotFound(booking_id)

                if booking.status != COMPLETED:
                    logger.info(
                        "rating_rejected_not_completed",
                        extra={"booking_id": booking_id, "rater_role": rater_role, "status": booking.status},
                    )
                    raise BookingNotCompleted(
                        "Ratings open once the booking is completed",
                        details={"booking_id": booking_id, "current_status": booking.status},
                    )

                party_id = booking.customer_id if rater_role == "customer" else booking.provider_id
                ratee_id = booking.provider_id if rater_role == "customer" else booking.customer_id
                if rater_id is not None and rater_id != party_id:
                    raise ActorNotPermitted(
                        f"Only the booking's {rater_role} can submit this rating",
                        details={"booking_id": booking_id, "rater_role": rater_role},
                    )

                already = booking.customer_rated if rater_role == "customer" else booking.provider_rated
                if already:
                    raise AlreadyRated(
                        f"The {rater_role} has already rated this booking",
                        details={"booking_id": booking_id, "rater_role": rater_role},
                    )

                if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
                    raise InvalidScore(
                        f"Score must be an integer between {MIN_SCORE} and {MAX_SCORE}",
                        details={"booking_id": booking_id, "score": score},
                    )

                record = RatingRecord(
                    booking_id=booking_id,
                    rater_role=rater_role,
                    rater_id=rater_id or party_id,
                    ratee_id=ratee_id,
                    score=score,
                    comment=comment,
                    created_at=self.clock(),
                )
                db.add(record)
                if rater_role == "customer":
                    booking.customer_rated = True
                else:
                    booking.provider_rated = True
                booking.updated_at = self.clock()

                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise AlreadyRated(
                        f"The {rater_role} has already rated this booking",
                        details={"booking_id": booking_id, "rater_role": rater_role},
                    )

        logger.info(
            "rating_submitted",
            extra={"booking_id": booking_id, "rater_role": rater_role, "score": score},
        )
        await self.notifier.rating_submitted(record)
        return record

    async def provider_summary(self, provider_id: str) -> dict:
        stmt = (
            select(RatingRecord.score, func.count(RatingRecord.id))
            .where(RatingRecord.ratee_id == provider_id)
            .where(RatingRecord.rater_role == "customer")
            .group_by(RatingRecord.score)
        )
        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()

        breakdown = {s: 0 for s in range(MIN_SCORE, MAX_SCORE + 1)}
        for score, count in rows:
            breakdown[int(score)] = int(count)
        total = sum(breakdown.values())
        average = round(sum(s * c for s, c in breakdown.items()) / total, 2) if total else 0.0
        return {
            "provider_id": provider_id,
            "average_rating": average,
            "total_ratings": total,
            "rating_breakdown": breakdown,
        }
