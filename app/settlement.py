import logging
from decimal import ROUND_HALF_UP, Decimal

from .config import PAYMENT_CURRENCY, PAYMENT_MIN_AMOUNT_MINOR
from .errors import (
    AlreadySettled,
    AmountTooSmall,
    BadRequest,
    Forbidden,
    NotFound,
    PaymentIncomplete,
    PreconditionFailed,
    WriteConflict,
)
from .events import EventFanout
from .idempotency import ProcessedEvents
from .lifecycle import require_party
from .models import Booking, BookingStatus, PaymentStatus, utcnow
from .payments import StripePaymentProcessor
from .store import MAX_WRITE_ATTEMPTS, BookingStore

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"

WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.payment_failed": FAILED,
    "payment_intent.canceled": CANCELED,
}


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def charge_amount(pricing: dict) -> float:
    final = pricing.get("final_amount")
    return final if final is not None else pricing["total_amount"]


class SettlementReconciler:
    """
    Payment intents and their outcomes for completed bookings.

    The synchronous confirm call and the processor webhook both end in
    apply_outcome(). Settlement is a single conditional write
    (payment_completed false -> true while status is completed), so duplicate
    or racing deliveries settle a booking at most once.
    """

    def __init__(
        self,
        store: BookingStore,
        processor: StripePaymentProcessor,
        fanout: EventFanout,
        processed_events: ProcessedEvents | None = None,
        currency: str = PAYMENT_CURRENCY,
        min_amount_minor: int = PAYMENT_MIN_AMOUNT_MINOR,
        clock=utcnow,
    ):
        self.store = store
        self.processor = processor
        self.fanout = fanout
        self.processed_events = processed_events or ProcessedEvents()
        self.currency = currency
        self.min_amount_minor = min_amount_minor
        self.clock = clock

    async def create_intent(self, booking_id: str, actor_id: str) -> dict:
        booking = await self.store.require(booking_id)

        if actor_id != booking.customer_id:
            raise Forbidden("Unauthorized - Not your booking")
        if booking.status != BookingStatus.COMPLETED:
            raise PreconditionFailed("Booking must be completed before payment")
        if booking.payment_completed:
            raise AlreadySettled(booking_id, booking.payment)

        amount = charge_amount(booking.pricing)
        amount_minor = to_minor_units(amount)
        if amount_minor < self.min_amount_minor:
            raise AmountTooSmall(f"Amount too small. Minimum is {self.min_amount_minor / 100:.2f}")

        customer_email = (booking.customer_details or {}).get("email")
        intent = await self.processor.create_intent(
            amount_minor,
            self.currency,
            metadata={
                "booking_id": booking.booking_id,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "service_type": booking.service_type,
                "customer_email": customer_email or "",
            },
            description=f"{booking.service_type} - {booking.category}",
            receipt_email=customer_email,
            idempotency_key=f"booking-{booking.booking_id}-v{booking.version}",
        )

        payment = {
            "payment_intent_id": intent.intent_id,
            "client_secret": intent.client_secret,
            "status": PaymentStatus.PENDING,
            "amount": amount,
            "currency": self.currency,
            "created_at": self.clock().isoformat(),
        }
        written = await self.store.update_if(
            booking_id, {"payment": payment}, Booking.payment_completed.is_(False)
        )
        if not written:
            current = await self.store.require(booking_id)
            raise AlreadySettled(booking_id, current.payment)

        logger.info("Payment intent %s created for booking %s", intent.intent_id, booking_id)
        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.intent_id,
            "amount": amount,
        }

    async def apply_outcome(self, booking_id: str, intent_id: str | None, outcome: str) -> Booking:
        if outcome not in (SUCCEEDED, FAILED, CANCELED):
            logger.warning("booking %s: unsupported payment outcome %r acknowledged", booking_id, outcome)
            return await self.store.require(booking_id)

        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            if booking.payment_completed:
                logger.info("booking %s already settled; %s outcome ignored", booking_id, outcome)
                return booking

            if outcome == SUCCEEDED:
                settled = await self._settle(booking, intent_id)
            else:
                settled = await self._mark_failed(booking, intent_id, outcome)

            if settled is not None:
                return settled

        raise WriteConflict()

    async def _settle(self, booking: Booking, intent_id: str | None) -> Booking | None:
        if booking.status != BookingStatus.COMPLETED:
            raise PreconditionFailed("Booking must be completed before payment")

        payment = dict(booking.payment or {})
        payment.setdefault("amount", charge_amount(booking.pricing))
        payment.setdefault("currency", self.currency)
        if intent_id:
            payment["payment_intent_id"] = intent_id
        payment["status"] = PaymentStatus.COMPLETED
        payment["completed_at"] = self.clock().isoformat()

        written = await self.store.update_if(
            booking.booking_id,
            {"payment_completed": True, "payment": payment},
            Booking.payment_completed.is_(False),
            Booking.status == BookingStatus.COMPLETED,
        )
        if not written:
            # lost to the other channel or a concurrent duplicate; re-read decides
            return None

        logger.info("Payment confirmed for booking %s (intent %s)", booking.booking_id, intent_id)
        await self.fanout.notify(
            booking.provider_id,
            "payment_received",
            {
                "booking_id": booking.booking_id,
                "amount": payment["amount"],
                "customer_name": (booking.customer_details or {}).get("name"),
            },
        )
        await self.fanout.notify(
            booking.customer_id,
            "payment_confirmed",
            {
                "booking_id": booking.booking_id,
                "amount": payment["amount"],
                "status": PaymentStatus.COMPLETED,
            },
        )
        return await self.store.require(booking.booking_id)

    async def _mark_failed(self, booking: Booking, intent_id: str | None, outcome: str) -> Booking | None:
        payment = booking.payment
        if not payment:
            return booking
        if intent_id and payment.get("payment_intent_id") != intent_id:
            logger.info(
                "booking %s: %s outcome for superseded intent %s ignored",
                booking.booking_id,
                outcome,
                intent_id,
            )
            return booking
        if payment.get("status") == PaymentStatus.FAILED:
            return booking

        written = await self.store.update_if(
            booking.booking_id,
            {"payment": {**payment, "status": PaymentStatus.FAILED}},
            Booking.payment_completed.is_(False),
            Booking.version == booking.version,
        )
        if not written:
            return None

        logger.info("Payment %s for booking %s", outcome, booking.booking_id)
        return await self.store.require(booking.booking_id)

    async def confirm(self, booking_id: str, actor_id: str, intent_id: str) -> Booking:
        booking = await self.store.require(booking_id)
        if actor_id != booking.customer_id:
            raise Forbidden("Unauthorized - Not your booking")
        if booking.payment_completed:
            return booking
        if not booking.payment:
            raise PreconditionFailed("No payment has been started for this booking")
        if booking.payment.get("payment_intent_id") != intent_id:
            raise BadRequest("Payment intent does not belong to this booking")

        status = await self.processor.retrieve_status(intent_id)

        if status == SUCCEEDED:
            return await self.apply_outcome(booking_id, intent_id, SUCCEEDED)
        if status == CANCELED:
            await self.apply_outcome(booking_id, intent_id, CANCELED)
            raise PaymentIncomplete("Payment was canceled")
        if status == "requires_payment_method":
            raise PaymentIncomplete("Payment method required")
        raise PaymentIncomplete(f"Payment status: {status}")

    async def handle_webhook(self, payload: bytes, signature: str | None) -> tuple[str, str]:
        """Process a signed processor callback; returns (status, event_type)."""
        event = self.processor.verify_webhook(payload, signature)
        event_id = event.get("id")
        event_type = event.get("type") or ""
        logger.info("Processing Stripe webhook event: %s (%s)", event_type, event_id)

        outcome = WEBHOOK_OUTCOMES.get(event_type)
        if outcome is None:
            logger.info("Unhandled webhook event type: %s", event_type)
            return "ignored", event_type

        if event_id and await self.processed_events.is_processed(event_id):
            logger.info("Webhook event %s already processed", event_id)
            return "duplicate", event_type

        intent = (event.get("data") or {}).get("object") or {}
        booking_id = (intent.get("metadata") or {}).get("booking_id")

        if not booking_id:
            logger.warning("Webhook %s has no booking_id in intent metadata", event_id)
            status = "ignored"
        else:
            try:
                await self.apply_outcome(booking_id, intent.get("id"), outcome)
                status = "success"
            except (NotFound, PreconditionFailed, BadRequest) as e:
                logger.warning("Webhook %s for booking %s not applied: %s", event_id, booking_id, e)
                status = "ignored"

        if event_id:
            await self.processed_events.mark_processed(event_id)
        return status, event_type

    async def get_status(self, booking_id: str, actor_id: str) -> dict:
        booking = await self.store.require(booking_id)
        require_party(booking, actor_id)
        return {
            "payment_completed": bool(booking.payment_completed),
            "payment": booking.payment,
        }
