import logging

from .redis_client import redis_client

logger = logging.getLogger(__name__)

PROCESSED_TTL_SECONDS = 86400


class ProcessedEvents:
    """
    Best-effort memory of webhook event ids already handled.

    Only saves work on redelivery; settlement correctness comes from the
    conditional write in the store, so Redis errors are logged and ignored.
    """

    def __init__(self, redis=None):
        self.redis = redis if redis is not None else redis_client

    async def is_processed(self, event_id: str) -> bool:
        try:
            return bool(await self.redis.exists(f"event:{event_id}"))
        except Exception as e:
            logger.warning("processed-event lookup failed for %s: %s", event_id, e)
            return False

    async def mark_processed(self, event_id: str) -> None:
        try:
            await self.redis.set(f"event:{event_id}", "1", ex=PROCESSED_TTL_SECONDS)
        except Exception as e:
            logger.warning("processed-event mark failed for %s: %s", event_id, e)
