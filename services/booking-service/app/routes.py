import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from . import config
from .errors import BookingError
from .models import BOOKING_STATUSES
from .rating import RatingGate
from .rbac import Actor, get_actor, require_role
from .schemas import (
    BookingListResponse,
    BookingResponse,
    CreateBookingRequest,
    EarningsResponse,
    EscrowResponse,
    PaymentConfirmedRequest,
    PaymentStatusResponse,
    ProviderRatingSummary,
    RatingRequest,
    RatingResponse,
)
from .state_machine import (
    CUSTOMER,
    CUSTOMER_CANCELLED,
    PAYMENT_CONFIRMED,
    PROVIDER,
    PROVIDER_ACCEPTED,
    PROVIDER_DECLINED,
    SERVICE_COMPLETED,
    SYSTEM,
    BookingStateMachine,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_machine(request: Request) -> BookingStateMachine:
    return request.app.state.machine


def get_rating_gate(request: Request) -> RatingGate:
    return request.app.state.rating_gate


def _can_view(actor: Actor, booking) -> bool:
    return actor.has("admin") or actor.sub in (booking.customer_id, booking.provider_id)


async def _transition(machine: BookingStateMachine, booking_id: str, event: str, role: str, actor_id: str | None, **kwargs):
    try:
        booking = await machine.transition(booking_id, event, role, actor_id=actor_id, **kwargs)
    except BookingError as e:
        raise e.to_http_exception()
    return BookingResponse.model_validate(booking)


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    require_role(actor, [CUSTOMER, "admin"])
    customer_id = data.customer_id or actor.sub
    if customer_id != actor.sub and not actor.has("admin"):
        raise HTTPException(status_code=403, detail="Cannot book on behalf of another customer")

    booking = await machine.create_booking(
        customer_id=customer_id,
        service_type=data.service_type,
        budget_amount=data.budget_amount,
        provider_id=data.provider_id,
        location=data.location,
        description=data.description,
    )
    return BookingResponse.model_validate(booking)


@router.get("/bookings", response_model=BookingListResponse)
async def list_bookings(
    customer_id: str | None = None,
    provider_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    if status_filter and status_filter not in BOOKING_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status {status_filter}")

    if not actor.has("admin"):
        # non-admins only ever see their own bookings
        if actor.has(PROVIDER) and (provider_id == actor.sub or not actor.has(CUSTOMER)):
            customer_id, provider_id = None, actor.sub
        else:
            customer_id, provider_id = actor.sub, None

    bookings = await machine.list_bookings(customer_id=customer_id, provider_id=provider_id, status=status_filter)
    return BookingListResponse(bookings=[BookingResponse.model_validate(b) for b in bookings])


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    try:
        booking = await machine.get_booking(booking_id)
    except BookingError as e:
        raise e.to_http_exception()
    if not _can_view(actor, booking):
        raise HTTPException(status_code=403, detail="Access forbidden for this booking")
    return BookingResponse.model_validate(booking)


@router.get("/bookings/{booking_id}/escrow", response_model=PaymentStatusResponse)
async def get_payment_status(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    try:
        view = await machine.payment_status(booking_id)
    except BookingError as e:
        raise e.to_http_exception()

    booking = view["booking"]
    if not _can_view(actor, booking):
        raise HTTPException(status_code=403, detail="Access forbidden for this booking")

    escrow = view["escrow"]
    return PaymentStatusResponse(
        booking_id=booking.booking_id,
        booking_status=booking.status,
        currency=config.CURRENCY,
        escrow=EscrowResponse.model_validate(escrow) if escrow is not None else None,
        auto_refund_at=view["auto_refund_at"],
        payment_pending=view["payment_pending"],
        message=view["message"],
    )


@router.post("/bookings/{booking_id}/payment-confirmed", response_model=BookingResponse)
async def payment_confirmed(
    booking_id: str,
    data: PaymentConfirmedRequest,
    x_webhook_secret: str | None = Header(default=None),
    machine: BookingStateMachine = Depends(get_machine),
):
    if config.PAYMENT_WEBHOOK_SECRET and not hmac.compare_digest(
        x_webhook_secret or "", config.PAYMENT_WEBHOOK_SECRET
    ):
        logger.warning("payment_webhook_bad_secret", extra={"booking_id": booking_id})
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    return await _transition(
        machine, booking_id, PAYMENT_CONFIRMED, SYSTEM, None, reference=data.reference, amount=data.amount
    )


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    require_role(actor, [PROVIDER])
    return await _transition(machine, booking_id, PROVIDER_ACCEPTED, PROVIDER, actor.sub)


@router.post("/bookings/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    require_role(actor, [PROVIDER])
    return await _transition(machine, booking_id, PROVIDER_DECLINED, PROVIDER, actor.sub)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    require_role(actor, [CUSTOMER, PROVIDER])
    role = CUSTOMER
    if actor.has(PROVIDER):
        role = PROVIDER
        if actor.has(CUSTOMER):
            try:
                booking = await machine.get_booking(booking_id)
            except BookingError as e:
                raise e.to_http_exception()
            if booking.customer_id == actor.sub:
                role = CUSTOMER
    return await _transition(machine, booking_id, SERVICE_COMPLETED, role, actor.sub)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    machine: BookingStateMachine = Depends(get_machine),
):
    require_role(actor, [CUSTOMER])
    return await _transition(machine, booking_id, CUSTOMER_CANCELLED, CUSTOMER, actor.sub)


@router.post("/ratings", response_model=RatingResponse, status_code=status.HTTP_201_CREATED)
async def submit_rating(
    data: RatingRequest,
    actor: Actor = Depends(get_actor),
    gate: RatingGate = Depends(get_rating_gate),
):
    require_role(actor, [data.rater_role])
    try:
        record = await gate.submit_rating(
            data.booking_id, data.rater_role, data.score, comment=data.comment, rater_id=actor.sub
        )
    except BookingError as e:
        raise e.to_http_exception()
    return RatingResponse.model_validate(record)


@router.get("/providers/{provider_id}/rating", response_model=ProviderRatingSummary)
async def provider_rating(provider_id: str, gate: RatingGate = Depends(get_rating_gate)):
    return await gate.provider_summary(provider_id)


@router.get("/providers/{provider_id}/earnings", response_model=EarningsResponse)
async def provider_earnings(
    provider_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    if actor.sub != provider_id and not actor.has("admin"):
        raise HTTPException(status_code=403, detail="Access forbidden for these earnings")
    machine: BookingStateMachine = request.app.state.machine
    async with machine.session_factory() as db:
        return await machine.ledger.provider_earnings(db, provider_id)
