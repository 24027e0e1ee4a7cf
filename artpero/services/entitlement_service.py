"""Entitlement service: turns a PAID order into what the buyer bought.

    EventOrder                       -> `quantity` Ticket rows
    ProductOrder / GIFT_CARD         -> gift code + expiry stored on the order
    ProductOrder / SUBSCRIPTION      -> the user's Membership upserted to ACTIVE
    ProductOrder / ENTRY             -> entry credits recorded on the grant

Exactly-once: issuance starts by inserting the order's EntitlementGrant row
inside a SAVEPOINT. entitlement_grants.order_id is UNIQUE, so when two
confirmations race, the database lets one insert through and the other gets
an IntegrityError, rolls back to the savepoint, and returns the winner's
summary. Everything for one order is created inside that savepoint: either
the whole batch exists or none of it does.

Functions flush but do NOT commit; the caller (payment_service) commits.
"""

import logging
import secrets

from flask import current_app
from sqlalchemy.exc import IntegrityError

from artpero.extensions import db
from artpero.models.catalog import Product
from artpero.models.entitlement import EntitlementGrant, Membership, Ticket
from artpero.models.order import EventOrder, Order, ProductOrder
from artpero.utils import add_months, as_utc, utcnow

logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes are read aloud and typed in by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TICKET_CODE_LENGTH = 10
GIFT_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


class EntitlementError(RuntimeError):
    pass


def _random_code(length):
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _find_grant(order_id):
    return EntitlementGrant.query.filter_by(order_id=order_id).first()


def issue(order):
    """Issue the entitlements for a PAID order, at most once.

    Returns:
        (summary, created): summary is the dict stored on the grant;
        created is False when a grant already existed (replay or lost race).
    """
    if order.status != Order.PAID:
        raise EntitlementError(f"Order {order.id} is {order.status}, not PAID")

    existing = _find_grant(order.id)
    if existing is not None:
        return existing.detail, False

    try:
        with db.session.begin_nested():
            grant = EntitlementGrant(order_id=order.id, kind=_grant_kind(order))
            db.session.add(grant)
            db.session.flush()  # claims the order; raises if already claimed

            summary = _issue_for(order)
            grant.detail = summary
            db.session.flush()
    except IntegrityError:
        existing = _find_grant(order.id)
        if existing is None:
            raise
        logger.info(f"Entitlements for order {order.id} already issued concurrently")
        return existing.detail, False

    logger.info(f"Issued {grant.kind} entitlements for order {order.id}")
    return summary, True


def _grant_kind(order):
    if isinstance(order, EventOrder):
        return "tickets"
    return {
        Product.GIFT_CARD: "gift_code",
        Product.SUBSCRIPTION: "membership",
        Product.ENTRY: "entry",
    }[order.product.category]


def _issue_for(order):
    """Dispatch over the order target; every category is handled explicitly."""
    if isinstance(order, EventOrder):
        return issue_tickets(order)
    if isinstance(order, ProductOrder):
        category = order.product.category
        if category == Product.GIFT_CARD:
            return issue_gift_code(order)
        if category == Product.SUBSCRIPTION:
            return activate_membership(order)
        if category == Product.ENTRY:
            return grant_entry_credits(order)
        raise EntitlementError(f"Unknown product category {category!r}")
    raise EntitlementError(f"Unknown order kind {order.kind!r}")


# ──────────────────────────────────────────────
# Tickets
# ──────────────────────────────────────────────

def _unique_ticket_codes(count):
    """`count` random codes, distinct within the batch and from stored tickets."""
    for _ in range(MAX_CODE_ATTEMPTS):
        codes = set()
        while len(codes) < count:
            codes.add(_random_code(TICKET_CODE_LENGTH))
        taken = db.session.scalars(
            db.select(Ticket.code).where(Ticket.code.in_(codes))
        ).all()
        if not taken:
            return sorted(codes)
    raise EntitlementError("Could not generate unique ticket codes")


def issue_tickets(order):
    """Create one Ticket per unit ordered, as a single batch."""
    codes = _unique_ticket_codes(order.quantity)
    tickets = [
        Ticket(
            order_id=order.id,
            event_id=order.event_id,
            user_id=order.user_id,
            code=code,
        )
        for code in codes
    ]
    db.session.add_all(tickets)
    db.session.flush()
    return {
        "kind": "tickets",
        "eventId": order.event_id,
        "ticketCodes": codes,
        "count": len(codes),
    }


# ──────────────────────────────────────────────
# Gift codes
# ──────────────────────────────────────────────

def generate_gift_code():
    """Prefix + 8 random characters, checked against every stored code."""
    prefix = current_app.config.get("GIFT_CODE_PREFIX", "ART-")
    for _ in range(MAX_CODE_ATTEMPTS):
        code = prefix + _random_code(GIFT_CODE_LENGTH)
        if ProductOrder.query.filter_by(gift_code=code).first() is None:
            return code
    raise EntitlementError("Could not generate a unique gift code")


def _validity_months(product):
    if product.validity_months:
        return product.validity_months
    months = (product.metadata_ or {}).get("validity_months")
    if months:
        return int(months)
    return current_app.config.get("GIFT_DEFAULT_VALIDITY_MONTHS", 6)


def issue_gift_code(order):
    """Assign the gift code and expiry to the order. Never reassigns."""
    if order.gift_code is None:
        order.gift_code = generate_gift_code()
        order.gift_expires_at = add_months(utcnow(), _validity_months(order.product))
        db.session.flush()
    return {
        "kind": "gift_code",
        "giftCode": order.gift_code,
        "expiresAt": as_utc(order.gift_expires_at).isoformat(),
        "eventsIncluded": order.product.events_included,
    }


# ──────────────────────────────────────────────
# Memberships
# ──────────────────────────────────────────────

def activate_membership(order):
    """Upsert the buyer's single Membership row to ACTIVE.

    The new period runs from now for product.duration_months. Unused time on
    a still-running period is not stacked, but the period end never moves
    backwards.
    """
    product = order.product
    now = utcnow()
    new_end = add_months(now, product.duration_months or 1)

    membership = Membership.query.filter_by(user_id=order.user_id).first()
    if membership is None:
        membership = Membership(user_id=order.user_id)
        db.session.add(membership)
    else:
        current_end = as_utc(membership.current_period_end)
        if current_end is not None and current_end > new_end:
            new_end = current_end

    membership.status = "ACTIVE"
    membership.plan = product.slug
    membership.current_period_end = new_end
    membership.source_order_id = order.id
    db.session.flush()

    return {
        "kind": "membership",
        "plan": membership.plan,
        "status": membership.status,
        "currentPeriodEnd": new_end.isoformat(),
    }


# ──────────────────────────────────────────────
# Entries
# ──────────────────────────────────────────────

def grant_entry_credits(order):
    """Single-entry products: the grant itself is the entitlement."""
    return {
        "kind": "entry",
        "credits": (order.product.events_included or 1) * order.quantity,
    }
