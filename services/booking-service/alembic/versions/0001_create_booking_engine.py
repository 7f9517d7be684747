from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=True),
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("budget_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("awaiting_acceptance_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_rated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider_rated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("payment_reference"),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index(
        "ix_bookings_awaiting_acceptance_deadline", "bookings", ["awaiting_acceptance_deadline"], unique=False
    )

    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("provider_amount", sa.Integer(), nullable=False),
        sa.Column("commission_amount", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("refund_amount", sa.Integer(), nullable=True),
        sa.Column("retained_amount", sa.Integer(), nullable=True),
        sa.Column("processor_reference", sa.String(), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("provider_amount + commission_amount = total_amount", name="ck_escrow_conservation"),
    )
    op.create_index("ix_escrow_transactions_booking_id", "escrow_transactions", ["booking_id"], unique=True)
    op.create_index("ix_escrow_transactions_state", "escrow_transactions", ["state"], unique=False)

    op.create_table(
        "ratings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("rater_role", sa.String(), nullable=False),
        sa.Column("rater_id", sa.String(), nullable=True),
        sa.Column("ratee_id", sa.String(), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("booking_id", "rater_role", name="uq_ratings_booking_rater_role"),
        sa.CheckConstraint("score BETWEEN 1 AND 5", name="ck_ratings_score_range"),
    )
    op.create_index("ix_ratings_booking_id", "ratings", ["booking_id"], unique=False)
    op.create_index("ix_ratings_ratee_id", "ratings", ["ratee_id"], unique=False)

    op.create_table(
        "booking_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("from_status", sa.String(), nullable=False),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_booking_events_booking_id", "booking_events", ["booking_id"], unique=False)
    op.create_index("ix_booking_events_status", "booking_events", ["status"], unique=False)

def downgrade():
    op.drop_index("ix_booking_events_status", table_name="booking_events")
    op.drop_index("ix_booking_events_booking_id", table_name="booking_events")
    op.drop_table("booking_events")
    op.drop_index("ix_ratings_ratee_id", table_name="ratings")
    op.drop_index("ix_ratings_booking_id", table_name="ratings")
    op.drop_table("ratings")
    op.drop_index("ix_escrow_transactions_state", table_name="escrow_transactions")
    op.drop_index("ix_escrow_transactions_booking_id", table_name="escrow_transactions")
    op.drop_table("escrow_transactions")
    op.drop_index("ix_bookings_awaiting_acceptance_deadline", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")
