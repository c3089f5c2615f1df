import logging
from dataclasses import dataclass

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import DISTANCE_API_KEY, DISTANCE_API_URL, DISTANCE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class DistanceUnavailable(Exception):
    pass


@dataclass(frozen=True)
class DistanceEstimate:
    meters: int
    seconds: int


class DistanceClient:
    """Driving distance and travel time between two coordinates (Distance Matrix API)."""

    def __init__(
        self,
        api_url: str = DISTANCE_API_URL,
        api_key: str = DISTANCE_API_KEY,
        timeout: float = DISTANCE_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            "distance-service", failure_threshold=5, reset_timeout_seconds=30
        )

    async def distance(self, origin: tuple[float, float], dest: tuple[float, float]) -> DistanceEstimate:
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise DistanceUnavailable(str(e))

        params = {
            "origins": f"{origin[0]},{origin[1]}",
            "destinations": f"{dest[0]},{dest[1]}",
            "mode": "driving",
            "key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.api_url, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            raise DistanceUnavailable("Timeout calling distance service")
        except (httpx.HTTPError, ValueError) as e:
            await self.breaker.record_failure()
            raise DistanceUnavailable(f"Distance service error: {e}")

        await self.breaker.record_success()

        try:
            element = data["rows"][0]["elements"][0]
            if data.get("status") != "OK" or element.get("status") != "OK":
                raise DistanceUnavailable("Unable to calculate distance")
            return DistanceEstimate(
                meters=int(element["distance"]["value"]),
                seconds=int(element["duration"]["value"]),
            )
        except (KeyError, IndexError, TypeError):
            raise DistanceUnavailable("Unexpected distance service response")
