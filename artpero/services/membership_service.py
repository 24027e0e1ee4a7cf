"""Membership service: reads and Stripe subscription sync.

Memberships are activated by entitlement_service when a subscription
product is paid. Shop subscriptions are one-time Checkout payments: the
Customer Stripe creates for that checkout is linked to the membership
(link_stripe_customer), so a Stripe-billed subscription later set up for
that customer (customer.subscription.updated / .deleted) is matched and
kept in step. Members who never went through a subscription checkout have
no Stripe customer and are not touched by those events.

Functions flush but do NOT commit; the caller commits.
"""

import logging

from artpero.extensions import db
from artpero.models.entitlement import Membership
from artpero.services.audit_service import log_audit
from artpero.services.stripe_service import _extract_period_end
from artpero.utils import as_utc

logger = logging.getLogger(__name__)

# Stripe subscription.status -> Membership.status
STATUS_MAP = {
    "active": "ACTIVE",
    "trialing": "ACTIVE",
    "past_due": "PAST_DUE",
    "unpaid": "PAST_DUE",
    "canceled": "CANCELED",
    "incomplete_expired": "CANCELED",
}


def get_membership(user_id):
    return Membership.query.filter_by(user_id=user_id).first()


def link_stripe_customer(user_id, stripe_customer_id):
    """Record the Stripe customer on the user's membership.

    Keeps an existing customer id; returns the Membership or None.
    """
    membership = get_membership(user_id)
    if membership is None or not stripe_customer_id:
        return membership
    if membership.stripe_customer_id and membership.stripe_customer_id != stripe_customer_id:
        logger.warning(
            f"Membership {membership.id} already linked to "
            f"{membership.stripe_customer_id}, keeping it (got {stripe_customer_id})"
        )
        return membership
    membership.stripe_customer_id = stripe_customer_id
    db.session.flush()
    return membership


def sync_subscription(sub_data):
    """Apply a Stripe subscription object to the matching membership.

    Looks the membership up by subscription id, then by customer id.
    current_period_end only ever moves forward.

    Returns the Membership, or None if no local membership matches.
    """
    stripe_subscription_id = sub_data.get("id")
    stripe_customer_id = sub_data.get("customer")

    membership = None
    if stripe_subscription_id:
        membership = Membership.query.filter_by(
            stripe_subscription_id=stripe_subscription_id
        ).first()
    if membership is None and stripe_customer_id:
        membership = Membership.query.filter_by(
            stripe_customer_id=stripe_customer_id
        ).first()

    if membership is None:
        logger.warning(
            f"subscription sync: no membership for sub={stripe_subscription_id} "
            f"customer={stripe_customer_id}"
        )
        return None

    status = STATUS_MAP.get(sub_data.get("status"), "NONE")
    membership.status = status
    membership.stripe_subscription_id = stripe_subscription_id

    period_end = _extract_period_end(sub_data)
    current_end = as_utc(membership.current_period_end)
    if period_end and (current_end is None or period_end > current_end):
        membership.current_period_end = period_end

    db.session.flush()

    log_audit("membership.synced", metadata={
        "membership_id": membership.id,
        "stripe_subscription_id": stripe_subscription_id,
        "status": status,
    })
    logger.info(f"Membership {membership.id} updated to {status}")
    return membership
