import logging

from dateutil import parser

from .distance import DistanceClient, DistanceUnavailable
from .errors import BadRequest, Forbidden, WriteConflict
from .events import EventFanout, booking_room
from .lifecycle import ACTIVE_DELIVERY, require_party
from .models import Booking, utcnow
from .schemas import LocationReport
from .store import MAX_WRITE_ATTEMPTS, BookingStore

logger = logging.getLogger(__name__)


class TrackingUpdater:
    """
    Provider position reports and the customer's live-tracking view.

    Position is persisted before ETA is computed; the distance lookup is a
    secondary effect whose failure leaves the position write intact.
    """

    def __init__(self, store: BookingStore, distance: DistanceClient, fanout: EventFanout, clock=utcnow):
        self.store = store
        self.distance = distance
        self.fanout = fanout
        self.clock = clock

    async def report_location(self, booking_id: str, actor_id: str, report: LocationReport) -> dict:
        for _ in range(MAX_WRITE_ATTEMPTS):
            booking = await self.store.require(booking_id)
            if actor_id != booking.provider_id:
                raise Forbidden("Only the assigned provider can report location")
            if report.latitude is None or report.longitude is None:
                raise BadRequest("Latitude and longitude are required")

            now = self.clock()
            stored = booking.provider_location
            if stored and stored.get("last_updated") and parser.isoparse(stored["last_updated"]) > now:
                # a later report already landed
                logger.info("booking %s: out-of-order location report dropped", booking_id)
                return {"provider_location": stored, "tracking": booking.tracking}

            location = {
                "latitude": report.latitude,
                "longitude": report.longitude,
                "last_updated": now.isoformat(),
                "heading": report.heading if report.heading is not None else 0,
                "speed": report.speed if report.speed is not None else 0,
            }
            if await self.store.update_if(
                booking_id, {"provider_location": location}, Booking.version == booking.version
            ):
                break
        else:
            raise WriteConflict()

        tracking = booking.tracking
        if booking.status in ACTIVE_DELIVERY:
            tracking = await self._refresh_eta(booking, location, written_version=booking.version + 1)

        await self.fanout.notify(
            booking_room(booking_id),
            "location_updated",
            {"booking_id": booking_id, "provider_location": location, "tracking": tracking},
        )
        return {"provider_location": location, "tracking": tracking}

    async def _refresh_eta(self, booking: Booking, location: dict, written_version: int) -> dict | None:
        dest = booking.service_location or {}
        try:
            estimate = await self.distance.distance(
                (location["latitude"], location["longitude"]),
                (dest["latitude"], dest["longitude"]),
            )
        except DistanceUnavailable as e:
            logger.warning("ETA unavailable for booking %s: %s", booking.booking_id, e)
            return booking.tracking
        except Exception:
            logger.exception("Error calculating distance/ETA for booking %s", booking.booking_id)
            return booking.tracking

        tracking = {
            **(booking.tracking or {}),
            "estimated_distance": estimate.meters,
            "estimated_duration": estimate.seconds,
            "last_calculated": self.clock().isoformat(),
        }
        written = await self.store.update_if(
            booking.booking_id, {"tracking": tracking}, Booking.version == written_version
        )
        if not written:
            logger.info("booking %s: newer write landed, ETA discarded", booking.booking_id)
            return booking.tracking
        return tracking

    async def read_tracking(self, booking_id: str, actor_id: str) -> dict:
        booking = await self.store.require(booking_id)
        require_party(booking, actor_id)

        if booking.status not in ACTIVE_DELIVERY:
            return {"tracking_available": False, "status": booking.status}

        details = booking.provider_details or {}
        return {
            "tracking_available": True,
            "status": booking.status,
            "provider_location": booking.provider_location,
            "service_location": booking.service_location,
            "tracking": booking.tracking,
            "provider_details": {
                "name": details.get("name"),
                "phone": details.get("phone"),
                "profile_photo": details.get("photo"),
            },
        }
