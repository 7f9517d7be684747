import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from app import expiry_worker
from app.errors import ActorNotPermitted, InvalidTransition, PaymentAmountMismatch, PaymentProcessorError
from app.models import BOOKING_STATUSES, TERMINAL_STATUSES, BookingEvent, EscrowTransaction
from app.policies import percentage_cancellation_fee
from app.state_machine import (
    CUSTOMER,
    CUSTOMER_CANCELLED,
    PAYMENT_CONFIRMED,
    PROVIDER,
    PROVIDER_ACCEPTED,
    PROVIDER_DECLINED,
    SERVICE_COMPLETED,
    SYSTEM,
    TIMEOUT_EXPIRED,
    TRANSITIONS,
)


async def _escrow(session_factory, booking_id):
    async with session_factory() as db:
        res = await db.execute(select(EscrowTransaction).where(EscrowTransaction.booking_id == booking_id))
        return res.scalar_one_or_none()


async def _escrow_count(session_factory, booking_id):
    async with session_factory() as db:
        res = await db.execute(
            select(func.count(EscrowTransaction.id)).where(EscrowTransaction.booking_id == booking_id)
        )
        return res.scalar_one()


async def test_payment_accept_complete_releases_escrow(machine, make_booking, session_factory, processor_api):
    booking = await make_booking(budget_amount=10000)
    assert booking.status == "pending"

    booking = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_001")
    assert booking.status == "awaiting_acceptance"
    escrow = await _escrow(session_factory, booking.booking_id)
    assert (escrow.total_amount, escrow.provider_amount, escrow.commission_amount, escrow.state) == (
        10000,
        8500,
        1500,
        "held",
    )
    assert escrow.commission_rate == Decimal("0.15")

    booking = await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    assert booking.status == "confirmed"
    assert booking.accepted_at is not None

    booking = await machine.transition(booking.booking_id, SERVICE_COMPLETED, CUSTOMER, actor_id="cust-1")
    assert booking.status == "completed"
    assert booking.requested_at <= booking.accepted_at <= booking.completed_at

    escrow = await _escrow(session_factory, booking.booking_id)
    assert escrow.state == "released"
    assert escrow.provider_amount + escrow.commission_amount == escrow.total_amount
    assert processor_api["release"].call_count == 1
    release_request = processor_api["release"].calls.last.request
    assert release_request.headers["Idempotency-Key"] == f"{booking.booking_id}:release"


async def test_acceptance_window_starts_at_hold(machine, make_booking, components, clock):
    booking = await make_booking()
    clock.advance(minutes=30)
    booking = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_002")

    assert booking.awaiting_acceptance_deadline == clock.now + timedelta(hours=4)
    score = await components.scheduler.deadline_of(booking.booking_id)
    assert score == (clock.now + timedelta(hours=4)).timestamp()


async def test_no_acceptance_within_window_refunds(machine, make_booking, session_factory, processor_api, clock, publisher):
    booking = await make_booking(paid=True)

    clock.advance(hours=3, minutes=59)
    assert (await expiry_worker.tick(machine))["expired"] == []

    clock.advance(minutes=1)
    result = await expiry_worker.tick(machine)
    assert result["expired"] == [booking.booking_id]

    booking = await machine.get_booking(booking.booking_id)
    assert booking.status == "cancelled_timeout"
    assert booking.cancellation_reason == "acceptance_timeout"
    escrow = await _escrow(session_factory, booking.booking_id)
    assert escrow.state == "refunded"
    assert escrow.refund_amount == escrow.total_amount
    assert processor_api["refund"].call_count == 1

    # a second tick has nothing left to fire
    assert (await expiry_worker.tick(machine))["expired"] == []
    assert processor_api["refund"].call_count == 1

    routing_key, event = publisher.messages[-1]
    assert routing_key == "booking.cancelled_timeout"
    assert "no-show, fully refunded" in event["data"]["message"]


async def test_duplicate_payment_webhook_is_a_noop(machine, make_booking, session_factory, processor_api, components):
    booking = await make_booking()
    first = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_dup")
    deadline = first.awaiting_acceptance_deadline

    second = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_dup")

    assert second.status == "awaiting_acceptance"
    assert second.awaiting_acceptance_deadline.replace(tzinfo=None) == deadline.replace(tzinfo=None)
    assert await _escrow_count(session_factory, booking.booking_id) == 1
    assert processor_api["hold"].call_count == 1
    assert await components.scheduler.deadline_of(booking.booking_id) == deadline.timestamp()


async def test_late_payment_webhook_replay_after_acceptance_is_a_noop(machine, make_booking):
    booking = await make_booking(paid=True, reference="psk_late")
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    replay = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_late")

    assert replay.status == "confirmed"


async def test_payment_with_different_reference_is_rejected(machine, make_booking):
    booking = await make_booking(paid=True, reference="psk_a")

    with pytest.raises(InvalidTransition) as exc:
        await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_b")

    assert exc.value.details["current_status"] == "awaiting_acceptance"


async def test_reference_cannot_pay_two_bookings(machine, make_booking):
    await make_booking(paid=True, reference="psk_shared")
    other = await make_booking()

    with pytest.raises(InvalidTransition):
        await machine.transition(other.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_shared")


async def test_payment_amount_must_match_budget(machine, make_booking, session_factory):
    booking = await make_booking(budget_amount=10000)

    with pytest.raises(PaymentAmountMismatch):
        await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_x", amount=9000)

    assert await _escrow_count(session_factory, booking.booking_id) == 0


async def test_unlisted_event_raises_invalid_transition(machine, make_booking, session_factory):
    booking = await make_booking()

    with pytest.raises(InvalidTransition) as exc:
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    assert exc.value.current_status == "pending"
    assert exc.value.event == PROVIDER_ACCEPTED
    async with session_factory() as db:
        count = (await db.execute(select(func.count(BookingEvent.id)))).scalar_one()
    assert count == 0


async def test_duplicate_acceptance_returns_confirmed(machine, make_booking, components):
    booking = await make_booking(paid=True)
    first = await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    second = await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    assert second.status == "confirmed"
    assert second.accepted_at.replace(tzinfo=None) == first.accepted_at.replace(tzinfo=None)
    assert await components.scheduler.deadline_of(booking.booking_id) is None


async def test_timeout_rejected_while_window_open(machine, make_booking, clock):
    booking = await make_booking(paid=True)
    clock.advance(hours=1)

    with pytest.raises(InvalidTransition):
        await machine.transition(booking.booking_id, TIMEOUT_EXPIRED, SYSTEM)


async def test_acceptance_after_deadline_loses_to_timeout(machine, make_booking, session_factory, processor_api, clock):
    booking = await make_booking(paid=True)
    clock.advance(hours=4, seconds=1)

    with pytest.raises(InvalidTransition) as exc:
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    assert exc.value.current_status == "cancelled_timeout"

    escrow = await _escrow(session_factory, booking.booking_id)
    assert escrow.state == "refunded"

    # the worker finds the timer already settled
    assert (await expiry_worker.tick(machine))["expired"] == []
    assert processor_api["refund"].call_count == 1


async def test_concurrent_acceptance_and_expiry_resolve_once(machine, make_booking, session_factory, processor_api, clock):
    booking = await make_booking(paid=True)
    clock.advance(hours=4)

    results = await asyncio.gather(
        machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1"),
        expiry_worker.tick(machine),
        return_exceptions=True,
    )

    assert isinstance(results[0], InvalidTransition)
    booking = await machine.get_booking(booking.booking_id)
    assert booking.status == "cancelled_timeout"
    assert processor_api["refund"].call_count == 1
    assert processor_api["release"].call_count == 0


async def test_concurrent_acceptance_and_cancellation_pick_one(machine, make_booking, session_factory):
    booking = await make_booking(paid=True)

    results = await asyncio.gather(
        machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1"),
        machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) <= 1
    booking = await machine.get_booking(booking.booking_id)
    escrow = await _escrow(session_factory, booking.booking_id)
    if booking.status == "confirmed":
        assert escrow.state == "held"
    else:
        assert booking.status == "cancelled_manual"
        assert escrow.state == "refunded"


async def test_customer_cancel_before_acceptance_refunds_in_full(machine, make_booking, session_factory, components):
    booking = await make_booking(paid=True)

    booking = await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1")

    assert booking.status == "cancelled_manual"
    assert booking.cancellation_reason == "customer_cancelled"
    escrow = await _escrow(session_factory, booking.booking_id)
    assert (escrow.state, escrow.refund_amount, escrow.retained_amount) == ("refunded", 10000, 0)
    assert await components.scheduler.deadline_of(booking.booking_id) is None


async def test_provider_decline_refunds(machine, make_booking, session_factory):
    booking = await make_booking(paid=True)

    booking = await machine.transition(booking.booking_id, PROVIDER_DECLINED, PROVIDER, actor_id="prov-1")

    assert booking.status == "cancelled_manual"
    assert booking.cancellation_reason == "provider_declined"
    assert (await _escrow(session_factory, booking.booking_id)).state == "refunded"


async def test_cancel_after_acceptance_applies_policy_fee(machine, make_booking, session_factory, processor_api):
    machine.cancellation_policy = percentage_cancellation_fee("0.10")
    booking = await make_booking(budget_amount=10000, paid=True)
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    booking = await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1")

    escrow = await _escrow(session_factory, booking.booking_id)
    assert (escrow.state, escrow.refund_amount, escrow.retained_amount) == ("refunded", 9000, 1000)
    assert booking.accepted_at is not None
    assert booking.completed_at is None
    refund_body = processor_api["refund"].calls.last.request.content
    assert b'"retained_amount":1000' in refund_body.replace(b" ", b"")


async def test_provider_events_require_the_assigned_provider(machine, make_booking):
    booking = await make_booking(paid=True, provider_id="prov-1")

    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-2")
    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, CUSTOMER, actor_id="cust-1")
    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-9")


async def test_completion_roles_are_configurable(machine, make_booking):
    machine.completion_roles = frozenset({CUSTOMER})
    booking = await make_booking(paid=True)
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, SERVICE_COMPLETED, PROVIDER, actor_id="prov-1")

    booking = await machine.transition(booking.booking_id, SERVICE_COMPLETED, CUSTOMER, actor_id="cust-1")
    assert booking.status == "completed"


async def test_job_board_booking_records_accepting_provider(machine, make_booking):
    booking = await make_booking(provider_id=None, paid=True)

    booking = await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-7")

    assert booking.provider_id == "prov-7"
    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, SERVICE_COMPLETED, PROVIDER, actor_id="prov-8")


async def test_commission_rate_is_fixed_at_hold(machine, make_booking, session_factory, monkeypatch):
    booking = await make_booking(budget_amount=10000, paid=True)
    monkeypatch.setenv("COMMISSION_RATE", "0.20")
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    await machine.transition(booking.booking_id, SERVICE_COMPLETED, CUSTOMER, actor_id="cust-1")

    escrow = await _escrow(session_factory, booking.booking_id)
    assert (escrow.provider_amount, escrow.commission_amount) == (8500, 1500)

    later = await make_booking(budget_amount=10000, paid=True)
    escrow = await _escrow(session_factory, later.booking_id)
    assert (escrow.provider_amount, escrow.commission_amount) == (8000, 2000)


async def test_release_failure_leaves_payment_pending_then_resumes(
    machine, make_booking, session_factory, processor_api
):
    booking = await make_booking(paid=True)
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    processor_api["release"].side_effect = httpx.ConnectError
    with pytest.raises(PaymentProcessorError) as exc:
        await machine.transition(booking.booking_id, SERVICE_COMPLETED, CUSTOMER, actor_id="cust-1")
    assert exc.value.code == "PaymentPending"

    booking = await machine.get_booking(booking.booking_id)
    assert booking.status == "confirmed"
    status = await machine.payment_status(booking.booking_id)
    assert status["payment_pending"] is True
    assert status["message"].startswith("Payment pending")

    # a new event for the booking is refused while the release cannot finish
    with pytest.raises(PaymentProcessorError):
        await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1")

    processor_api["release"].side_effect = None
    assert await machine.resume_pending() == 1

    booking = await machine.get_booking(booking.booking_id)
    assert booking.status == "completed"
    assert (await _escrow(session_factory, booking.booking_id)).state == "released"
    keys = {call.request.headers["Idempotency-Key"] for call in processor_api["release"].calls}
    assert keys == {f"{booking.booking_id}:release"}


async def test_failed_hold_is_resumed_by_webhook_retry(machine, make_booking, session_factory, processor_api):
    booking = await make_booking()
    processor_api["hold"].side_effect = httpx.ConnectTimeout

    with pytest.raises(PaymentProcessorError):
        await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_retry")
    assert (await machine.get_booking(booking.booking_id)).status == "pending"
    assert await _escrow_count(session_factory, booking.booking_id) == 0

    processor_api["hold"].side_effect = None
    booking = await machine.transition(booking.booking_id, PAYMENT_CONFIRMED, SYSTEM, reference="psk_retry")

    assert booking.status == "awaiting_acceptance"
    assert await _escrow_count(session_factory, booking.booking_id) == 1
    async with session_factory() as db:
        events = (await db.execute(select(BookingEvent).where(BookingEvent.booking_id == booking.booking_id))).scalars().all()
    assert [(e.event, e.status) for e in events] == [(PAYMENT_CONFIRMED, "applied")]


async def test_recover_expires_overdue_bookings_after_restart(
    machine, make_booking, session_factory, processor_api, clock, redis_stub
):
    booking = await make_booking(paid=True)
    waiting = await make_booking(paid=True)
    clock.advance(hours=2)
    fresh = await make_booking(paid=True)

    # process restart: timers are gone, deadlines survive in the database
    redis_stub.zsets.clear()
    clock.advance(hours=2, minutes=30)

    summary = await machine.recover()

    assert summary == {"resumed": 0, "expired": 2, "restored": 1}
    assert (await machine.get_booking(booking.booking_id)).status == "cancelled_timeout"
    assert (await machine.get_booking(waiting.booking_id)).status == "cancelled_timeout"
    assert (await machine.get_booking(fresh.booking_id)).status == "awaiting_acceptance"
    assert await machine.scheduler.deadline_of(fresh.booking_id) is not None
    assert processor_api["refund"].call_count == 2

    # running the sweep again changes nothing
    assert await machine.recover() == {"resumed": 0, "expired": 0, "restored": 0}
    assert processor_api["refund"].call_count == 2


async def test_terminal_booking_rejects_further_events(machine, make_booking):
    booking = await make_booking(paid=True)
    await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1")

    with pytest.raises(InvalidTransition) as exc:
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    assert exc.value.current_status == "cancelled_manual"


async def test_transitions_publish_notifications(machine, make_booking, publisher):
    booking = await make_booking(paid=True)
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")
    await machine.transition(booking.booking_id, SERVICE_COMPLETED, PROVIDER, actor_id="prov-1")

    assert publisher.routing_keys() == [
        "booking.pending",
        "booking.awaiting_acceptance",
        "booking.confirmed",
        "booking.completed",
    ]
    assert publisher.messages[-1][1]["data"]["rating_open"] is True


def test_terminal_statuses_have_no_outgoing_events():
    assert [key for key in TRANSITIONS if key[0] in TERMINAL_STATUSES] == []
    assert set(TRANSITIONS.values()) <= set(BOOKING_STATUSES)


async def test_replayed_event_from_another_actor_is_refused(machine, make_booking):
    booking = await make_booking(paid=True)
    await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-1")

    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, PROVIDER_ACCEPTED, PROVIDER, actor_id="prov-2")

    await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-1")
    with pytest.raises(ActorNotPermitted):
        await machine.transition(booking.booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor_id="cust-2")
