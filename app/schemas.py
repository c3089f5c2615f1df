from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PartyDetails(BaseModel):
    name: str
    phone: str
    email: str
    photo: str | None = None


class ServiceLocation(BaseModel):
    latitude: float
    longitude: float
    formatted_address: str | None = None


class CreateBookingRequest(BaseModel):
    provider_id: str
    service_type: str
    category: str
    scheduled_date: datetime
    time_slot: str
    service_address: str
    service_location: ServiceLocation
    hourly_rate: float
    estimated_hours: float = 1
    platform_fee: float = 5
    customer_details: PartyDetails
    provider_details: PartyDetails
    additional_notes: str | None = Field(default=None, max_length=500)
    customer_attached_photos: list[str] = Field(default_factory=list, max_length=5)


class UpdateStatusRequest(BaseModel):
    status: str


class CancelBookingRequest(BaseModel):
    reason: str | None = None


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=1000)


class RejectWorkRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)


class WorkDocumentationRequest(BaseModel):
    before_photos: list[str] | None = Field(default=None, max_length=10)
    after_photos: list[str] | None = Field(default=None, max_length=10)
    work_notes: str | None = Field(default=None, max_length=1000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    customer_id: str
    provider_id: str
    service_type: str
    category: str
    scheduled_date: datetime
    time_slot: str
    service_address: str
    additional_notes: str | None = None
    customer_attached_photos: list[str] | None = None
    customer_details: dict
    provider_details: dict
    service_location: dict
    status: str
    pricing: dict
    timeline: dict
    payment_completed: bool
    payment: dict | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    rating: int | None = None
    review: str | None = None
    reviewed_at: datetime | None = None
    work_documentation: dict | None = None
    dispute: dict | None = None
    created_at: datetime
    updated_at: datetime


class StatusChangeResponse(BaseModel):
    booking_id: str
    old_status: str
    new_status: str


class CreateIntentRequest(BaseModel):
    booking_id: str


class CreateIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    amount: float


class ConfirmPaymentRequest(BaseModel):
    booking_id: str
    payment_intent_id: str


class ConfirmPaymentResponse(BaseModel):
    booking_id: str
    payment_status: str
    amount: float | None = None


class PaymentStatusResponse(BaseModel):
    payment_completed: bool
    payment: dict | None = None


class WebhookResponse(BaseModel):
    status: str  # success/ignored/duplicate
    event_type: str | None = None


class LocationReport(BaseModel):
    # optional here so a missing coordinate is reported as a 400, not a 422
    latitude: float | None = None
    longitude: float | None = None
    heading: float | None = None
    speed: float | None = None


class LocationUpdateResponse(BaseModel):
    provider_location: dict
    tracking: dict | None = None
