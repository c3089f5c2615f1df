import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_db
from .distance import DistanceClient
from .errors import BookingError
from .events import EventFanout
from .idempotency import ProcessedEvents
from .lifecycle import BookingLifecycle
from .payments import StripePaymentProcessor
from .rabbitmq import publisher
from .schemas import (
    BookingResponse,
    CancelBookingRequest,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreateBookingRequest,
    CreateIntentRequest,
    CreateIntentResponse,
    LocationReport,
    LocationUpdateResponse,
    PaymentStatusResponse,
    RejectWorkRequest,
    ReviewRequest,
    StatusChangeResponse,
    UpdateStatusRequest,
    WebhookResponse,
    WorkDocumentationRequest,
)
from .security import Actor, get_current_actor
from .settlement import SettlementReconciler
from .store import BookingStore
from .tracking import TrackingUpdater

logger = logging.getLogger(__name__)

bookings_router = APIRouter(prefix="/bookings", tags=["Bookings"])
payments_router = APIRouter(prefix="/payments", tags=["Payments"])
tracking_router = APIRouter(prefix="/tracking", tags=["Tracking"])


# ================= DEPENDENCIES =================

def get_fanout() -> EventFanout:
    return EventFanout(publisher)


def get_payment_processor() -> StripePaymentProcessor:
    return StripePaymentProcessor()


def get_distance_client() -> DistanceClient:
    return DistanceClient()


def get_processed_events() -> ProcessedEvents:
    return ProcessedEvents()


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    fanout: EventFanout = Depends(get_fanout),
) -> BookingLifecycle:
    return BookingLifecycle(BookingStore(db), fanout)


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    processor: StripePaymentProcessor = Depends(get_payment_processor),
    fanout: EventFanout = Depends(get_fanout),
    processed_events: ProcessedEvents = Depends(get_processed_events),
) -> SettlementReconciler:
    return SettlementReconciler(BookingStore(db), processor, fanout, processed_events)


def get_tracking(
    db: AsyncSession = Depends(get_db),
    distance: DistanceClient = Depends(get_distance_client),
    fanout: EventFanout = Depends(get_fanout),
) -> TrackingUpdater:
    return TrackingUpdater(BookingStore(db), distance, fanout)


# ================= BOOKINGS =================

@bookings_router.post("", response_model=BookingResponse, status_code=201)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.create(actor.subject_id, data)


@bookings_router.get("/customer/me", response_model=list[BookingResponse])
async def customer_bookings(
    status: str | None = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.list_for_customer(actor.subject_id, status)


@bookings_router.get("/provider/me", response_model=list[BookingResponse])
async def provider_bookings(
    status: str | None = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.list_for_provider(actor.subject_id, status)


@bookings_router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.get(booking_id, actor.subject_id)


@bookings_router.put("/{booking_id}/status", response_model=StatusChangeResponse)
async def update_booking_status(
    booking_id: str,
    data: UpdateStatusRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    booking, old_status = await lifecycle.transition(booking_id, actor.subject_id, data.status)
    return StatusChangeResponse(
        booking_id=booking.booking_id,
        old_status=old_status,
        new_status=booking.status,
    )


@bookings_router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.cancel(booking_id, actor.subject_id, data.reason)


@bookings_router.post("/{booking_id}/review", response_model=BookingResponse)
async def review_booking(
    booking_id: str,
    data: ReviewRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.review(booking_id, actor.subject_id, data.rating, data.review)


@bookings_router.post("/{booking_id}/approve", response_model=BookingResponse)
async def approve_work(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.approve(booking_id, actor.subject_id)


@bookings_router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_work(
    booking_id: str,
    data: RejectWorkRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.reject(booking_id, actor.subject_id, data.reason, data.description)


@bookings_router.post("/{booking_id}/documentation", response_model=BookingResponse)
async def document_work(
    booking_id: str,
    data: WorkDocumentationRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.document_work(booking_id, actor.subject_id, data)


# ================= PAYMENTS =================

@payments_router.post("/intents", response_model=CreateIntentResponse)
async def create_payment_intent(
    data: CreateIntentRequest,
    actor: Actor = Depends(get_current_actor),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    return await reconciler.create_intent(data.booking_id, actor.subject_id)


@payments_router.post("/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    data: ConfirmPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    booking = await reconciler.confirm(data.booking_id, actor.subject_id, data.payment_intent_id)
    payment = booking.payment or {}
    return ConfirmPaymentResponse(
        booking_id=booking.booking_id,
        payment_status=payment.get("status", "completed"),
        amount=payment.get("amount"),
    )


@payments_router.get("/status/{booking_id}", response_model=PaymentStatusResponse)
async def payment_status(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    return await reconciler.get_status(booking_id, actor.subject_id)


@payments_router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        status, event_type = await reconciler.handle_webhook(payload, signature)
    except BookingError:
        raise
    except Exception:
        logger.exception("Error processing Stripe webhook")
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    return WebhookResponse(status=status, event_type=event_type)


# ================= TRACKING =================

@tracking_router.post("/bookings/{booking_id}/location", response_model=LocationUpdateResponse)
async def report_location(
    booking_id: str,
    data: LocationReport,
    actor: Actor = Depends(get_current_actor),
    tracking: TrackingUpdater = Depends(get_tracking),
):
    return await tracking.report_location(booking_id, actor.subject_id, data)


@tracking_router.get("/bookings/{booking_id}/location")
async def read_tracking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    tracking: TrackingUpdater = Depends(get_tracking),
):
    return await tracking.read_tracking(booking_id, actor.subject_id)
