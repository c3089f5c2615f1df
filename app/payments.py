import asyncio
import json
import logging
from dataclasses import dataclass

import stripe

from .config import PAYMENT_TIMEOUT_SECONDS, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from .errors import InvalidSignature, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedIntent:
    intent_id: str
    client_secret: str


class StripePaymentProcessor:
    """
    Stripe-backed payment processor.

    The SDK is blocking, so calls run in a worker thread under a bounded
    timeout. A timed-out call surfaces as UpstreamUnavailable; the caller must
    not have written anything yet.
    """

    def __init__(
        self,
        api_key: str | None = STRIPE_SECRET_KEY,
        webhook_secret: str | None = STRIPE_WEBHOOK_SECRET,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    async def _call(self, fn, *args, **kwargs):
        if not self.api_key:
            raise UpstreamUnavailable("Payment processor not configured")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Stripe call %s timed out after %ss", fn.__qualname__, self.timeout)
            raise UpstreamUnavailable("Payment processor timed out")
        except stripe.StripeError as e:
            logger.error("Stripe call %s failed: %s", fn.__qualname__, e)
            raise UpstreamUnavailable("Payment processor error")

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict,
        description: str | None = None,
        receipt_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreatedIntent:
        kwargs = {
            "amount": amount_minor,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            kwargs["description"] = description
        if receipt_email:
            kwargs["receipt_email"] = receipt_email
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        intent = await self._call(stripe.PaymentIntent.create, **kwargs)
        return CreatedIntent(intent_id=intent.id, client_secret=intent.client_secret)

    async def retrieve_status(self, intent_id: str) -> str:
        intent = await self._call(stripe.PaymentIntent.retrieve, intent_id)
        return intent.status

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """Check the Stripe-Signature header over the raw body and return the event."""
        if not signature:
            logger.warning("Missing Stripe signature header")
            raise InvalidSignature()
        if not self.webhook_secret:
            logger.error("Webhook secret not configured; rejecting callback")
            raise InvalidSignature()

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("Invalid Stripe webhook signature")
            raise InvalidSignature()
        except ValueError:
            logger.warning("Unparseable Stripe webhook payload")
            raise InvalidSignature()

        return json.loads(payload.decode("utf-8"))
