import logging
import time

from .redis_client import redis_client

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

# consecutive-failure window; older failures stop counting
FAILURE_WINDOW_SECONDS = 60


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker for an upstream dependency, shared by every
    instance of the service.

    State lives in one hash, `breaker:<name>`:
      - state: CLOSED, OPEN or HALF_OPEN
      - failures: failures seen in the current window
      - opened_at: epoch seconds of the last trip

    After `reset_timeout_seconds` an OPEN breaker lets one trial call through as
    HALF_OPEN; its result closes or re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        redis=None,
        clock=time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.redis = redis if redis is not None else redis_client
        self.clock = clock

    @property
    def key(self) -> str:
        return f"breaker:{self.name}"

    async def _snapshot(self) -> dict:
        return await self.redis.hgetall(self.key) or {}

    async def state(self) -> str:
        return (await self._snapshot()).get("state") or CLOSED

    async def allow_request(self) -> None:
        snap = await self._snapshot()
        if snap.get("state") != OPEN:
            return

        opened_at = snap.get("opened_at")
        if opened_at is None or self.clock() - float(opened_at) >= self.reset_timeout_seconds:
            await self.redis.hset(self.key, mapping={"state": HALF_OPEN})
            logger.info("breaker %s half-open, probing", self.name)
            return

        raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        snap = await self._snapshot()
        if snap.get("state", CLOSED) == CLOSED and not snap.get("failures"):
            return
        await self.redis.delete(self.key)
        if snap.get("state") == HALF_OPEN:
            logger.info("breaker %s closed after a successful trial call", self.name)

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self._trip()
            return

        failures = await self.redis.hincrby(self.key, "failures", 1)
        if failures == 1:
            await self.redis.expire(self.key, FAILURE_WINDOW_SECONDS)
        if failures >= self.failure_threshold:
            await self._trip()

    async def _trip(self) -> None:
        await self.redis.hset(
            self.key,
            mapping={"state": OPEN, "opened_at": str(self.clock()), "failures": 0},
        )
        await self.redis.expire(self.key, self.reset_timeout_seconds + 30)
        logger.warning("breaker %s opened for %ss", self.name, self.reset_timeout_seconds)
