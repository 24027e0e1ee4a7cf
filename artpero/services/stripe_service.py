"""Stripe service: the payment processor gateway.

Thin adapter around the Stripe operations the payment flow consumes:

- Creating Checkout Sessions (one-time payments)
- Retrieving a session to learn its true payment state
- Expiring an open session so a canceled order can no longer be paid
- Verifying webhook signatures and constructing the event

Stripe errors never leak out of this module: signature problems become
SignatureError, transport/API failures become RetryableError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe
from flask import current_app

from artpero.errors import RetryableError, SignatureError

logger = logging.getLogger(__name__)

# Stripe payment_status values that mean the money is collected
PAID_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class SessionState:
    payment_status: str          # paid | unpaid | no_payment_required
    payment_reference: str       # payment intent id, None until paid
    status: str = None           # open | complete | expired
    url: str = None              # hosted checkout URL while open
    customer: str = None         # Stripe customer, when one was created

    @property
    def is_paid(self):
        return self.payment_status in PAID_STATUSES


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    stripe.max_network_retries = 2


def _object_id(value):
    """Stripe fields may hold an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            ts = items["data"][0].get("current_period_end")

    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def create_checkout_session(line_item, success_url, cancel_url, metadata,
                            create_customer=False):
    """Create a one-time-payment Checkout Session.

    Args:
        line_item: Stripe line item dict (price_data + quantity).
        success_url / cancel_url: where Stripe sends the buyer back.
        metadata: carries order_id, user_id and the target id. order_id is
            also the idempotency key, so a double-submitted checkout can't
            open two sessions for one order.
        create_customer: ask Stripe to create a Customer for the buyer, so
            later subscription events can be matched to their membership.

    Returns a CheckoutSession(session_id, redirect_url).
    Raises RetryableError on Stripe failures.
    """
    _configure()
    order_id = metadata.get("order_id")
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [line_item],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {k: str(v) for k, v in metadata.items() if v is not None},
    }
    if order_id:
        params["client_reference_id"] = order_id
        params["idempotency_key"] = f"checkout-{order_id}"
    if create_customer:
        params["customer_creation"] = "always"

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout creation failed for order {order_id}: {e}")
        raise RetryableError(
            "Payment provider unavailable, please try again."
        ) from e

    return CheckoutSession(session_id=session.id, redirect_url=session.url)


def retrieve_session(session_id):
    """Ask Stripe for the true state of a checkout session.

    Returns a SessionState.
    Raises RetryableError on Stripe failures.
    """
    _configure()
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        logger.warning(f"Stripe session retrieval failed for {session_id}: {e}")
        raise RetryableError(
            "Could not reach the payment provider, please try again."
        ) from e

    return SessionState(
        payment_status=session.get("payment_status"),
        payment_reference=_object_id(session.get("payment_intent")),
        status=session.get("status"),
        url=session.get("url"),
        customer=_object_id(session.get("customer")),
    )


def expire_session(session_id):
    """Expire an open checkout session so it can no longer be paid.

    Raises RetryableError on Stripe failures, including a session that
    completed in the meantime; the caller re-reads its state and retries.
    """
    _configure()
    try:
        stripe.checkout.Session.expire(session_id)
    except stripe.StripeError as e:
        logger.warning(f"Stripe session expiry failed for {session_id}: {e}")
        raise RetryableError(
            "Could not close the checkout, please try again."
        ) from e
    logger.info(f"Checkout session {session_id} expired")


# ──────────────────────────────────────────────
# Webhooks
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header, secret=None):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises SignatureError on a missing/invalid signature or malformed payload.
    """
    if not sig_header:
        raise SignatureError("Missing signature")
    webhook_secret = secret or current_app.config["STRIPE_WEBHOOK_SECRET"]
    try:
        return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError as e:
        raise SignatureError("Invalid signature") from e
    except ValueError as e:
        raise SignatureError("Invalid payload") from e


def session_from_event(event):
    """The checkout session object carried by a checkout.session.* event."""
    return event["data"]["object"]


def payment_reference_from_session(session):
    return _object_id(session.get("payment_intent"))


def customer_from_session(session):
    return _object_id(session.get("customer"))
