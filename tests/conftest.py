import os

# settings are read at import time; set them before any app import
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.db import Base
from app.distance import DistanceEstimate, DistanceUnavailable
from app.errors import UpstreamUnavailable
from app.idempotency import ProcessedEvents
from app.lifecycle import BookingLifecycle, compute_pricing
from app.models import Booking, BookingStatus
from app.payments import CreatedIntent, StripePaymentProcessor
from app.settlement import SettlementReconciler
from app.store import BookingStore
from app.tracking import TrackingUpdater

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

CUSTOMER = "cust-1"
PROVIDER = "prov-1"
STRANGER = "someone-else"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeFanout:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    async def notify(self, target: str, event_name: str, payload: dict) -> None:
        self.sent.append((target, event_name, payload))

    def names(self) -> list[str]:
        return [name for _, name, _ in self.sent]


class FakeProcessor(StripePaymentProcessor):
    """Stripe stand-in; webhook verification stays real."""

    def __init__(self):
        super().__init__(api_key=None, webhook_secret=WEBHOOK_SECRET)
        self.created: list[dict] = []
        self.statuses: dict[str, str] = {}
        self.fail_create = False

    async def create_intent(self, amount_minor, currency, metadata, description=None,
                            receipt_email=None, idempotency_key=None):
        if self.fail_create:
            raise UpstreamUnavailable("Payment processor timed out")
        intent_id = f"pi_{len(self.created) + 1}"
        self.created.append(
            {
                "intent_id": intent_id,
                "amount_minor": amount_minor,
                "currency": currency,
                "metadata": metadata,
                "description": description,
                "idempotency_key": idempotency_key,
            }
        )
        return CreatedIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_status(self, intent_id: str) -> str:
        return self.statuses.get(intent_id, "requires_payment_method")


class FakeDistance:
    def __init__(self, meters: int = 1200, seconds: int = 300):
        self.result = DistanceEstimate(meters=meters, seconds=seconds)
        self.available = True
        self.calls: list[tuple] = []

    async def distance(self, origin, dest):
        self.calls.append((origin, dest))
        if not self.available:
            raise DistanceUnavailable("Timeout calling distance service")
        return self.result


class FakeRedis:
    """In-memory subset of redis.asyncio used by the breaker and event dedupe."""

    def __init__(self):
        self.data: dict = {}

    async def set(self, key, value, ex=None):
        self.data[key] = str(value)
        return True

    async def exists(self, key):
        return int(key in self.data)

    async def hgetall(self, key):
        return dict(self.data.get(key, {}))

    async def hset(self, key, mapping):
        self.data.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hincrby(self, key, field, amount=1):
        h = self.data.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def expire(self, key, seconds):
        return True

    async def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def intent_event(event_type: str, booking_id: str | None, intent_id: str = "pi_1",
                 event_id: str | None = None) -> bytes:
    metadata = {"booking_id": booking_id} if booking_id else {}
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": metadata}},
    }
    return json.dumps(event).encode("utf-8")


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/bookings.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def store(session):
    return BookingStore(session)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fanout():
    return FakeFanout()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def distance():
    return FakeDistance()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def lifecycle(store, fanout, clock):
    return BookingLifecycle(store, fanout, clock=clock)


@pytest.fixture
def reconciler(store, processor, fanout, fake_redis, clock):
    return SettlementReconciler(store, processor, fanout, ProcessedEvents(fake_redis), clock=clock)


@pytest.fixture
def tracker(store, distance, fanout, clock):
    return TrackingUpdater(store, distance, fanout, clock=clock)


@pytest.fixture
def make_booking(store):
    """Insert a booking directly in the given status."""

    async def _make(status: str = BookingStatus.PENDING, hourly_rate=20, estimated_hours=2,
                    platform_fee=5, **overrides) -> Booking:
        now = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        fields = dict(
            booking_id=str(uuid.uuid4()),
            customer_id=CUSTOMER,
            provider_id=PROVIDER,
            service_type="Plumbing",
            category="Home Repair",
            scheduled_date=now + timedelta(days=1),
            time_slot="09:00-11:00",
            service_address="12 Lake Road, Colombo",
            customer_details={"name": "Nimal", "phone": "0771234567", "email": "nimal@example.com", "photo": None},
            provider_details={"name": "Kamal", "phone": "0779876543", "email": "kamal@example.com", "photo": "k.png"},
            service_location={"latitude": 6.9271, "longitude": 79.8612, "formatted_address": "Colombo"},
            status=status,
            pricing=compute_pricing(hourly_rate, estimated_hours, platform_fee),
            timeline={"booked_at": now.isoformat()},
            payment_completed=False,
            version=1,
            created_at=now,
            updated_at=now,
        )
        fields.update(overrides)
        return await store.add(Booking(**fields))

    return _make
