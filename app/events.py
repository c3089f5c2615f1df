import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

from .rabbitmq import RabbitPublisher

logger = logging.getLogger(__name__)

PUBLISH_TIMEOUT_SECONDS = 2.0


def build_event(event_type: str, data: dict, target: str | None = None) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "target": target,
        "data": data,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def booking_room(booking_id: str) -> str:
    return f"booking:{booking_id}"


class EventFanout:
    """
    Emits domain events to the real-time delivery layer.

    Fire-and-forget: nothing raised here may fail the state change that
    produced the event.
    """

    def __init__(self, publisher: RabbitPublisher):
        self._publisher = publisher

    async def notify(self, target: str, event_name: str, payload: dict) -> None:
        event = build_event(event_name, payload, target=target)
        try:
            await asyncio.wait_for(
                self._publisher.publish(f"booking.{event_name}", to_json(event)),
                timeout=PUBLISH_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning("fan-out of %s to %s dropped: %s", event_name, target, e)
