import time
from types import SimpleNamespace

import pytest
import stripe

from app.errors import InvalidSignature, UpstreamUnavailable
from app.payments import StripePaymentProcessor

from .conftest import WEBHOOK_SECRET, intent_event, sign_webhook


def make_processor(api_key="sk_test_123", timeout=5.0):
    return StripePaymentProcessor(api_key=api_key, webhook_secret=WEBHOOK_SECRET, timeout=timeout)


@pytest.mark.asyncio
async def test_slow_stripe_call_times_out():
    def slow(*args, **kwargs):
        time.sleep(0.5)

    with pytest.raises(UpstreamUnavailable, match="timed out"):
        await make_processor(timeout=0.05)._call(slow)


@pytest.mark.asyncio
async def test_stripe_error_is_upstream_unavailable():
    def failing(*args, **kwargs):
        raise stripe.StripeError("card network down")

    with pytest.raises(UpstreamUnavailable, match="Payment processor error"):
        await make_processor()._call(failing)


@pytest.mark.asyncio
async def test_unconfigured_processor_never_calls_stripe():
    calls = []

    with pytest.raises(UpstreamUnavailable, match="not configured"):
        await make_processor(api_key=None)._call(lambda *a, **kw: calls.append(a))

    assert calls == []


@pytest.mark.asyncio
async def test_create_intent_forwards_key_and_idempotency(monkeypatch):
    seen = {}

    def fake_create(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(id="pi_9", client_secret="pi_9_secret")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    intent = await make_processor().create_intent(
        4500, "lkr", {"booking_id": "b-1"}, description="Plumbing - Home Repair",
        receipt_email="nimal@example.com", idempotency_key="booking-b-1-v3",
    )

    assert (intent.intent_id, intent.client_secret) == ("pi_9", "pi_9_secret")
    assert seen["api_key"] == "sk_test_123"
    assert seen["amount"] == 4500
    assert seen["idempotency_key"] == "booking-b-1-v3"
    assert seen["automatic_payment_methods"] == {"enabled": True}


@pytest.mark.asyncio
async def test_retrieve_status(monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve", lambda intent_id, **kwargs: SimpleNamespace(status="processing")
    )

    assert await make_processor().retrieve_status("pi_9") == "processing"


def test_verify_webhook_returns_event():
    payload = intent_event("payment_intent.succeeded", "b-1", event_id="evt_9")

    event = make_processor().verify_webhook(payload, sign_webhook(payload))

    assert event["id"] == "evt_9"
    assert event["data"]["object"]["metadata"]["booking_id"] == "b-1"


def test_verify_webhook_without_secret_rejects():
    payload = intent_event("payment_intent.succeeded", "b-1")
    processor = StripePaymentProcessor(api_key=None, webhook_secret=None)

    with pytest.raises(InvalidSignature):
        processor.verify_webhook(payload, sign_webhook(payload))
