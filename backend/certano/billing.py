"""Thin gateway over the Stripe client library.

Only the calls the billing flow needs live here so routes and services
can be tested by monkeypatching this module instead of the network.
"""

import json
import logging
from typing import Any, Dict

import stripe

from .config import settings

logger = logging.getLogger("certano.billing")


class BillingConfigError(RuntimeError):
    """Raised when a Stripe call is attempted without the required secret."""


class InvalidWebhook(ValueError):
    """Raised when a webhook payload is malformed or its signature does not match."""


def _configure() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise BillingConfigError("STRIPE_SECRET_KEY is not configured")
    stripe.api_key = settings.STRIPE_SECRET_KEY


def create_customer(email: str, user_id: int) -> str:
    """Create a Stripe customer for the user and return its id."""
    _configure()
    customer = stripe.Customer.create(email=email, metadata={'user_id': str(user_id)})
    logger.info("stripe_customer_created user_id=%s customer=%s", user_id, customer.id)
    return customer.id


def create_checkout_session(*, customer_id: str, price_id: str, user_id: int, success_url: str, cancel_url: str) -> str:
    """Create a subscription-mode checkout session and return its id."""
    _configure()
    session = stripe.checkout.Session.create(
        customer=customer_id,
        payment_method_types=['card'],
        line_items=[{'price': price_id, 'quantity': 1}],
        mode='subscription',
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={'user_id': str(user_id)},
    )
    return session.id


def verify_event(payload: bytes, sig_header: str) -> Dict[str, Any]:
    """Check the `Stripe-Signature` header against the raw body and decode the event.

    Raises `InvalidWebhook` on a bad signature or body and
    `BillingConfigError` when no webhook secret is configured.
    """
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise BillingConfigError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise InvalidWebhook("missing Stripe-Signature header")
    try:
        text = payload.decode('utf-8')
        stripe.WebhookSignature.verify_header(text, sig_header, secret)
        event = json.loads(text)
    except stripe.SignatureVerificationError as e:
        raise InvalidWebhook(f"signature verification failed: {e}") from e
    except ValueError as e:
        raise InvalidWebhook(f"invalid payload: {e}") from e
    if not isinstance(event, dict) or 'type' not in event:
        raise InvalidWebhook("invalid payload: missing event type")
    return event
