from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from shared.database import Base

# Booking.status
PENDING = "pending"
AWAITING_ACCEPTANCE = "awaiting_acceptance"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED_TIMEOUT = "cancelled_timeout"
CANCELLED_MANUAL = "cancelled_manual"

BOOKING_STATUSES = (
    PENDING,
    AWAITING_ACCEPTANCE,
    CONFIRMED,
    COMPLETED,
    CANCELLED_TIMEOUT,
    CANCELLED_MANUAL,
)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED_TIMEOUT, CANCELLED_MANUAL})

# EscrowTransaction.state
HELD = "held"
RELEASED = "released"
REFUNDED = "refunded"

# BookingEvent.status
INTENT_PENDING = "pending"
INTENT_PENDING_RETRY = "pending_retry"
INTENT_APPLIED = "applied"
INTENT_FAILED = "failed"
UNFINISHED_INTENTS = (INTENT_PENDING, INTENT_PENDING_RETRY)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=True, index=True)

    service_type = Column(String, nullable=False)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    budget_amount = Column(Integer, nullable=False)

    status = Column(String, nullable=False, index=True)
    payment_reference = Column(String, nullable=True, unique=True)

    requested_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    awaiting_acceptance_deadline = Column(DateTime(timezone=True), nullable=True, index=True)

    customer_rated = Column(Boolean, nullable=False, default=False)
    provider_rated = Column(Boolean, nullable=False, default=False)

    @property
    def rating_status(self) -> dict:
        return {"customer_rated": bool(self.customer_rated), "provider_rated": bool(self.provider_rated)}

    @property
    def rating_locked(self) -> bool:
        return bool(self.customer_rated and self.provider_rated)


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"
    __table_args__ = (
        CheckConstraint("provider_amount + commission_amount = total_amount", name="ck_escrow_conservation"),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), unique=True, nullable=False, index=True)

    total_amount = Column(Integer, nullable=False)
    commission_rate = Column(Numeric(6, 4), nullable=False)
    provider_amount = Column(Integer, nullable=False)
    commission_amount = Column(Integer, nullable=False)

    state = Column(String, nullable=False, index=True)  # held/released/refunded
    refund_amount = Column(Integer, nullable=True)
    retained_amount = Column(Integer, nullable=True)
    processor_reference = Column(String, nullable=True)

    held_at = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)


class RatingRecord(Base):
    __tablename__ = "ratings"
    __table_args__ = (
        UniqueConstraint("booking_id", "rater_role", name="uq_ratings_booking_rater_role"),
        CheckConstraint("score BETWEEN 1 AND 5", name="ck_ratings_score_range"),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    rater_role = Column(String, nullable=False)  # customer/provider
    rater_id = Column(String, nullable=True)
    ratee_id = Column(String, nullable=True, index=True)
    score = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BookingEvent(Base):
    """Write-ahead log of transitions: one row per accepted event, per booking."""

    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)

    event = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    actor_id = Column(String, nullable=True)
    reference = Column(String, nullable=True)

    from_status = Column(String, nullable=False)
    to_status = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    status = Column(String, nullable=False, index=True)  # pending/pending_retry/applied/failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    applied_at = Column(DateTime(timezone=True), nullable=True)
