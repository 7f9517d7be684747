from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateBookingRequest(BaseModel):
    customer_id: Optional[str] = None  # defaults to the calling customer
    provider_id: Optional[str] = None
    service_type: str = Field(min_length=1)
    location: Optional[str] = None
    description: Optional[str] = None
    budget_amount: int = Field(ge=0, description="Minor units (kobo, cents)")


class RatingStatus(BaseModel):
    customer_rated: bool
    provider_rated: bool


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    status: str
    customer_id: str
    provider_id: Optional[str] = None
    service_type: str
    location: Optional[str] = None
    description: Optional[str] = None
    budget_amount: int
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    awaiting_acceptance_deadline: Optional[datetime] = None
    rating_status: RatingStatus


class BookingListResponse(BaseModel):
    bookings: List[BookingResponse]


class PaymentConfirmedRequest(BaseModel):
    reference: str = Field(min_length=1, description="Processor transaction id")
    amount: Optional[int] = Field(default=None, ge=0)


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_amount: int
    commission_rate: Decimal
    provider_amount: int
    commission_amount: int
    state: str
    refund_amount: Optional[int] = None
    retained_amount: Optional[int] = None
    held_at: datetime
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class PaymentStatusResponse(BaseModel):
    booking_id: str
    booking_status: str
    currency: str
    escrow: Optional[EscrowResponse] = None
    auto_refund_at: Optional[datetime] = None
    payment_pending: bool
    message: str


class RatingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId")
    rater_role: Literal["customer", "provider"] = Field(alias="raterRole")
    score: int
    comment: Optional[str] = Field(default=None, max_length=2000)


class RatingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    rater_role: str
    score: int
    comment: Optional[str] = None
    created_at: datetime


class ProviderRatingSummary(BaseModel):
    provider_id: str
    average_rating: float
    total_ratings: int
    rating_breakdown: Dict[int, int]


class EarningsResponse(BaseModel):
    provider_id: str
    currency: str
    total_earned: int
    pending: int
    completed_jobs: int
    average_per_job: int
