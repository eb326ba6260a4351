"""
Payment gateway adapter.

The gateway is the source of truth for whether a payment succeeded. The
engine trusts signed webhook events and its own re-query of gateway state.
It also opens payments: a payment intent for in-app checkout and a hosted
payment link that can be mailed to the buyer.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe

from backend.app.core.config import settings
from backend.app.core.exceptions import ExternalServiceError, ValidationFailedError
from backend.app.core.reliability import CircuitOpenError, bounded, gateway_circuit_breaker
from backend.app.domain.billing.money import HUNDRED, to_money

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Pounds to pence."""
    return int(to_money(amount) * HUNDRED)


class PaymentGateway(ABC):

    @abstractmethod
    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the signature and return the event as a plain dict."""

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Re-query a payment intent (status, metadata)."""

    @abstractmethod
    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], description: str
    ) -> Dict[str, Any]:
        """Open a payment intent; returns at least id, client_secret and status."""

    @abstractmethod
    async def create_payment_link(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], name: str, return_url: str
    ) -> Dict[str, Any]:
        """Open a hosted payment link; returns at least id and url."""


class StripeGateway(PaymentGateway):
    """Stripe-backed gateway."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret or not signature:
            raise ValidationFailedError("Missing signature or webhook secret")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationFailedError(f"Webhook signature verification failed: {exc}")
        logger.debug("Verified gateway event %s", event["id"])
        return json.loads(payload)

    async def _call(self, what: str, fn: Callable[..., Any], *args, **kwargs) -> Dict[str, Any]:
        """Run a blocking Stripe call off the loop, behind the breaker and timeout."""
        if not self.secret_key:
            raise ExternalServiceError("stripe", "Stripe not configured")

        async def _run():
            obj = await asyncio.to_thread(fn, *args, api_key=self.secret_key, **kwargs)
            return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)

        try:
            return await bounded(
                gateway_circuit_breaker.call(_run), settings.gateway_timeout_seconds
            )
        except CircuitOpenError:
            raise ExternalServiceError("stripe", "circuit open, gateway calls suspended")
        except asyncio.TimeoutError:
            raise ExternalServiceError("stripe", f"{what} timed out")
        except stripe.StripeError as exc:
            raise ExternalServiceError("stripe", str(exc))

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._call(
            f"lookup of {payment_intent_id}", stripe.PaymentIntent.retrieve, payment_intent_id
        )

    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], description: str
    ) -> Dict[str, Any]:
        intent = await self._call(
            "payment intent creation",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            metadata=metadata,
            description=description,
        )
        logger.info("Created payment intent %s for %s", intent.get("id"), metadata)
        return intent

    async def create_payment_link(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], name: str, return_url: str
    ) -> Dict[str, Any]:
        price = await self._call(
            "price creation",
            stripe.Price.create,
            unit_amount=to_minor_units(amount),
            currency=currency.lower(),
            product_data={"name": name},
        )
        link = await self._call(
            "payment link creation",
            stripe.PaymentLink.create,
            line_items=[{"price": price["id"], "quantity": 1}],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            after_completion={"type": "redirect", "redirect": {"url": return_url}},
        )
        logger.info("Created payment link %s for %s", link.get("id"), metadata)
        return link
