import logging
import uuid

from .errors import (
    AlreadyReviewed,
    BadRequest,
    Forbidden,
    InvalidTransition,
    PreconditionFailed,
    WriteConflict,
)
from .events import EventFanout, booking_room
from .models import Booking, BookingStatus as S, DisputeStatus, utcnow
from .schemas import CreateBookingRequest, WorkDocumentationRequest
from .store import MAX_WRITE_ATTEMPTS, BookingStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    S.PENDING: {S.CONFIRMED, S.CANCELLED},
    S.CONFIRMED: {S.ON_THE_WAY, S.IN_PROGRESS, S.CANCELLED},
    S.ON_THE_WAY: {S.ARRIVED, S.CANCELLED},
    S.ARRIVED: {S.IN_PROGRESS, S.CANCELLED},
    S.IN_PROGRESS: {S.AWAITING_APPROVAL, S.COMPLETED, S.CANCELLED},
    S.AWAITING_APPROVAL: {S.COMPLETED, S.DISPUTED},
    S.DISPUTED: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
}

# provider en route through job in progress
ACTIVE_DELIVERY = frozenset({S.ON_THE_WAY, S.ARRIVED, S.IN_PROGRESS})

# sign-off edges only the customer may take
CUSTOMER_ONLY = frozenset({
    (S.AWAITING_APPROVAL, S.COMPLETED),
    (S.AWAITING_APPROVAL, S.DISPUTED),
    (S.DISPUTED, S.COMPLETED),
})

TIMELINE_FIELDS = {
    S.CONFIRMED: "confirmed_at",
    S.ON_THE_WAY: "started_travel_at",
    S.ARRIVED: "arrived_at",
    S.IN_PROGRESS: "work_started_at",
    S.AWAITING_APPROVAL: "work_completed_at",
    S.COMPLETED: "work_completed_at",
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def timeline_field(current: str, target: str) -> str | None:
    if target == S.COMPLETED and current in (S.AWAITING_APPROVAL, S.DISPUTED):
        return "customer_approved_at"
    return TIMELINE_FIELDS.get(target)


def compute_pricing(hourly_rate: float, estimated_hours: float, platform_fee: float) -> dict:
    total = round(hourly_rate * estimated_hours + platform_fee, 2)
    return {
        "hourly_rate": hourly_rate,
        "estimated_hours": estimated_hours,
        "platform_fee": platform_fee,
        "total_amount": total,
    }


def require_party(booking: Booking, actor_id: str) -> str:
    role = booking.role_of(actor_id)
    if role is None:
        raise Forbidden()
    return role


class BookingLifecycle:
    def __init__(self, store: BookingStore, fanout: EventFanout, clock=utcnow):
        self.store = store
        self.fanout = fanout
        self.clock = clock

    async def create(self, customer_id: str, data: CreateBookingRequest) -> Booking:
        if data.provider_id == customer_id:
            raise BadRequest("Cannot book yourself as provider")
        if data.hourly_rate <= 0 or data.estimated_hours <= 0:
            raise BadRequest("hourly_rate and estimated_hours must be positive")
        if data.platform_fee < 0:
            raise BadRequest("platform_fee cannot be negative")

        now = self.clock()
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            customer_id=customer_id,
            provider_id=data.provider_id,
            service_type=data.service_type,
            category=data.category,
            scheduled_date=data.scheduled_date,
            time_slot=data.time_slot,
            service_address=data.service_address,
            additional_notes=data.additional_notes,
            customer_attached_photos=list(data.customer_attached_photos),
            customer_details=data.customer_details.model_dump(),
            provider_details=data.provider_details.model_dump(),
            service_location=data.service_location.model_dump(),
            status=S.PENDING,
            pricing=compute_pricing(data.hourly_rate, data.estimated_hours, data.platform_fee),
            timeline={"booked_at": now.isoformat()},
            payment_completed=False,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self.store.add(booking)
        logger.info("booking %s created by %s", booking.booking_id, customer_id)

        await self.fanout.notify(
            booking.provider_id,
            "booking_created",
            {
                "booking_id": booking.booking_id,
                "service_type": booking.service_type,
                "scheduled_date": booking.scheduled_date.isoformat(),
                "customer_name": data.customer_details.name,
            },
        )
        return booking

    async def get(self, booking_id: str, actor_id: str) -> Booking:
        booking = await self.store.require(booking_id)
        require_party(booking, actor_id)
        return booking

    async def list_for_customer(self, actor_id: str, status: str | None = None) -> list[Booking]:
        return await self.store.list_for_customer(actor_id, status)

    async def list_for_provider(self, actor_id: str, status: str | None = None) -> list[Booking]:
        return await self.store.list_for_provider(actor_id, status)

    async def transition(self, booking_id: str, actor_id: str, target: str) -> tuple[Booking, str]:
        """Move a booking along the lifecycle graph; returns (booking, old_status)."""
        if target not in S.ALL:
            raise BadRequest(f"Unknown status: {target}")
        if target == S.CANCELLED:
            return await self._cancel(booking_id, actor_id, None)
        if target == S.DISPUTED:
            return await self._dispute(booking_id, actor_id, None, None)

        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            role = require_party(booking, actor_id)
            old_status = booking.status
            if not can_transition(old_status, target):
                raise InvalidTransition(f"Cannot move booking from {old_status} to {target}")
            if (old_status, target) in CUSTOMER_ONLY and role != "customer":
                raise Forbidden("Only the customer can sign off the work")

            now = self.clock()
            timeline = dict(booking.timeline or {})
            timeline[timeline_field(old_status, target)] = now.isoformat()
            values = {"status": target, "timeline": timeline}
            if target == S.COMPLETED:
                values["completed_at"] = now
                if old_status == S.DISPUTED and booking.dispute:
                    values["dispute"] = {
                        **booking.dispute,
                        "status": DisputeStatus.RESOLVED,
                        "resolution": "approved by customer",
                        "resolved_at": now.isoformat(),
                    }

            if await self.store.update_if(booking_id, values, Booking.status == old_status):
                logger.info("booking %s: %s -> %s by %s", booking_id, old_status, target, actor_id)
                await self.fanout.notify(
                    booking_room(booking_id),
                    "status_changed",
                    {"booking_id": booking_id, "old_status": old_status, "new_status": target},
                )
                return await self.store.require(booking_id), old_status

            logger.info("booking %s: status changed concurrently, re-validating", booking_id)

        raise WriteConflict()

    async def approve(self, booking_id: str, actor_id: str) -> Booking:
        booking = await self.store.require(booking_id)
        require_party(booking, actor_id)
        if booking.status not in (S.AWAITING_APPROVAL, S.DISPUTED):
            raise PreconditionFailed("Only work awaiting approval can be approved")
        booking, _ = await self.transition(booking_id, actor_id, S.COMPLETED)
        return booking

    async def reject(self, booking_id: str, actor_id: str, reason: str, description: str | None) -> Booking:
        booking, _ = await self._dispute(booking_id, actor_id, reason, description)
        return booking

    async def _dispute(
        self, booking_id: str, actor_id: str, reason: str | None, description: str | None
    ) -> tuple[Booking, str]:
        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            role = require_party(booking, actor_id)
            old_status = booking.status
            if not can_transition(old_status, S.DISPUTED):
                raise InvalidTransition(f"Cannot dispute a booking that is {old_status}")
            if role != "customer":
                raise Forbidden("Only the customer can reject the work")

            dispute = {
                "reason": reason,
                "description": description,
                "raised_by": role,
                "raised_at": self.clock().isoformat(),
                "status": DisputeStatus.OPEN,
            }
            values = {"status": S.DISPUTED, "dispute": dispute}
            if await self.store.update_if(booking_id, values, Booking.status == old_status):
                logger.info("booking %s disputed by %s", booking_id, actor_id)
                await self.fanout.notify(
                    booking_room(booking_id),
                    "status_changed",
                    {
                        "booking_id": booking_id,
                        "old_status": old_status,
                        "new_status": S.DISPUTED,
                        "reason": reason,
                    },
                )
                return await self.store.require(booking_id), old_status

        raise WriteConflict()

    async def document_work(self, booking_id: str, actor_id: str, data: WorkDocumentationRequest) -> Booking:
        """Replace whichever of before/after photos and notes are supplied."""
        if data.before_photos is None and data.after_photos is None and data.work_notes is None:
            raise BadRequest("Nothing to document")

        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            if actor_id != booking.provider_id:
                raise Forbidden("Only the assigned provider can document work")
            if booking.status != S.IN_PROGRESS:
                raise PreconditionFailed("Work can only be documented while in progress")

            doc = dict(booking.work_documentation or {"before_photos": [], "after_photos": [], "work_notes": None})
            if data.before_photos is not None:
                doc["before_photos"] = list(data.before_photos)
            if data.after_photos is not None:
                doc["after_photos"] = list(data.after_photos)
            if data.work_notes is not None:
                doc["work_notes"] = data.work_notes

            if await self.store.update_if(
                booking_id,
                {"work_documentation": doc},
                Booking.status == S.IN_PROGRESS,
                Booking.version == booking.version,
            ):
                await self.fanout.notify(
                    booking_room(booking_id),
                    "work_documented",
                    {
                        "booking_id": booking_id,
                        "before_photos": len(doc["before_photos"]),
                        "after_photos": len(doc["after_photos"]),
                    },
                )
                return await self.store.require(booking_id)

        raise WriteConflict()

    async def cancel(self, booking_id: str, actor_id: str, reason: str | None) -> Booking:
        booking, _ = await self._cancel(booking_id, actor_id, reason)
        return booking

    async def _cancel(self, booking_id: str, actor_id: str, reason: str | None) -> tuple[Booking, str]:
        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            role = require_party(booking, actor_id)
            old_status = booking.status
            if not can_transition(old_status, S.CANCELLED):
                raise InvalidTransition(f"Cannot cancel a booking that is {old_status}")

            values = {
                "status": S.CANCELLED,
                "cancellation_reason": reason,
                "cancelled_by": role,
                "cancelled_at": self.clock(),
            }
            if await self.store.update_if(booking_id, values, Booking.status == old_status):
                logger.info("booking %s cancelled by %s (%s)", booking_id, role, actor_id)
                await self.fanout.notify(
                    booking_room(booking_id),
                    "status_changed",
                    {
                        "booking_id": booking_id,
                        "old_status": old_status,
                        "new_status": S.CANCELLED,
                        "cancelled_by": role,
                        "reason": reason,
                    },
                )
                return await self.store.require(booking_id), old_status

        raise WriteConflict()

    async def review(self, booking_id: str, actor_id: str, rating: int, review: str | None) -> Booking:
        booking = await self.store.require(booking_id)
        if actor_id != booking.customer_id:
            raise Forbidden("Only the customer can review a booking")
        if booking.status != S.COMPLETED:
            raise PreconditionFailed("Only completed bookings can be reviewed")
        if booking.rating is not None:
            raise AlreadyReviewed()

        values = {"rating": rating, "review": review, "reviewed_at": self.clock()}
        written = await self.store.update_if(
            booking_id, values, Booking.rating.is_(None), Booking.status == S.COMPLETED
        )
        if not written:
            raise AlreadyReviewed()

        await self.fanout.notify(
            booking.provider_id,
            "review_received",
            {"booking_id": booking_id, "rating": rating},
        )
        return await self.store.require(booking_id)
