"""Order service: the order ledger.

Owns the Order entity and its transition rules:

    PENDING -> PAID       (mark_paid, reconciler only)
    PENDING -> FAILED     (mark_failed, checkout expired / async payment failed)
    PENDING -> CANCELED   (cancel_order, owner before payment)

Transitions are conditional UPDATEs (`WHERE status = 'PENDING'`), so two
concurrent callers can't both move the same order. A status never leaves
PAID, FAILED or CANCELED.

Functions flush but do NOT commit; the caller commits.
"""

import logging
from dataclasses import dataclass

import bleach
from flask import current_app
from sqlalchemy import func, update

from artpero.errors import (
    CapacityExceededError,
    ConflictError,
    DuplicateRegistrationError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from artpero.extensions import db
from artpero.models.catalog import Event, Product
from artpero.models.entitlement import Membership
from artpero.models.order import EventOrder, Order, ProductOrder
from artpero.services.audit_service import log_audit
from artpero.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventTarget:
    """Order N tickets for an event."""

    event_id: str


@dataclass(frozen=True)
class ProductTarget:
    """Order a shop product (subscription, entry or gift card)."""

    product_id: str


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(text, tags=[], strip=True).strip() or None


def _validate_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be a whole number.")
    max_quantity = current_app.config.get("MAX_TICKETS_PER_ORDER", 10)
    if quantity < 1 or quantity > max_quantity:
        raise ValidationError(f"Quantity must be between 1 and {max_quantity}.")


# ──────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────

def paid_ticket_count(event_id):
    """Seats already sold for an event (sum of quantities of PAID orders)."""
    total = db.session.scalar(
        db.select(func.coalesce(func.sum(EventOrder.quantity), 0)).where(
            EventOrder.event_id == event_id,
            EventOrder.status == Order.PAID,
        )
    )
    return int(total or 0)


def get_order(order_id, requesting_user):
    """Load an order the caller is allowed to see.

    Raises NotFoundError if missing, ForbiddenError if the caller neither
    owns it nor is an admin.
    """
    order = db.session.get(Order, order_id) if order_id else None
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != requesting_user.id and not requesting_user.is_admin:
        raise ForbiddenError("Not authorized")
    return order


def list_orders_for_user(user_id, kind=None):
    """A user's orders, newest first. kind: None | "event" | "product"."""
    model = {"event": EventOrder, "product": ProductOrder}.get(kind, Order)
    return db.session.scalars(
        db.select(model)
        .where(model.user_id == user_id)
        .order_by(model.created_at.desc())
    ).all()


# ──────────────────────────────────────────────
# Creation
# ──────────────────────────────────────────────

def create_order(user, target, quantity=1, recipient_name=None, recipient_email=None):
    """Create a PENDING order for an event or a product.

    Args:
        user: The purchasing User.
        target: EventTarget or ProductTarget.
        quantity: Number of units (tickets, entries).
        recipient_name / recipient_email: Gift cards only (sanitized).

    Returns:
        The created EventOrder or ProductOrder.

    Raises:
        NotFoundError: target missing, unpublished or inactive.
        CapacityExceededError / DuplicateRegistrationError: event orders.
        ForbiddenError: members-only event without a current membership.
        ValidationError: bad quantity.
    """
    _validate_quantity(quantity)
    currency = current_app.config.get("CURRENCY", "eur")

    if isinstance(target, EventTarget):
        order = _build_event_order(user, target, quantity, currency)
    elif isinstance(target, ProductTarget):
        order = _build_product_order(
            user, target, quantity, currency, recipient_name, recipient_email
        )
    else:
        raise ValidationError("Unknown order target.")

    db.session.add(order)
    db.session.flush()

    log_audit("order.created", order_id=order.id, actor_user_id=user.id, metadata={
        "kind": order.kind,
        "quantity": quantity,
        "amount_due": order.amount_due,
    })
    logger.info(
        f"Order {order.id} created ({order.kind}, qty={quantity}, "
        f"amount={order.amount_due}) for user {user.id}"
    )
    return order


def _build_event_order(user, target, quantity, currency):
    event = db.session.get(Event, target.event_id) if target.event_id else None
    if event is None or not event.is_published:
        raise NotFoundError("Event not found")

    if event.is_members_only and not user.is_admin:
        membership = Membership.query.filter_by(user_id=user.id).first()
        if membership is None or not membership.is_current:
            raise ForbiddenError("This event is reserved for members.")

    if event.capacity is not None:
        if paid_ticket_count(event.id) + quantity > event.capacity:
            raise CapacityExceededError("Event is full")

    # FAILED and CANCELED orders don't hold a seat and may be retried
    existing = EventOrder.query.filter(
        EventOrder.event_id == event.id,
        EventOrder.user_id == user.id,
        EventOrder.status.in_([Order.PENDING, Order.PAID]),
    ).first()
    if existing is not None:
        raise DuplicateRegistrationError("Already registered for this event")

    return EventOrder(
        user_id=user.id,
        event_id=event.id,
        quantity=quantity,
        amount_due=event.price_cents * quantity,
        currency=currency,
        status=Order.PENDING,
    )


def _build_product_order(user, target, quantity, currency, recipient_name, recipient_email):
    product = db.session.get(Product, target.product_id) if target.product_id else None
    if product is None or not product.is_active:
        raise NotFoundError("Product not found")

    if product.category in (Product.SUBSCRIPTION, Product.GIFT_CARD) and quantity != 1:
        raise ValidationError(
            "Subscriptions and gift cards are purchased one at a time."
        )

    is_gift = product.category == Product.GIFT_CARD
    email = _sanitize(recipient_email) if is_gift else None
    return ProductOrder(
        user_id=user.id,
        product_id=product.id,
        quantity=quantity,
        amount_due=product.price_cents * quantity,
        currency=currency,
        status=Order.PENDING,
        recipient_name=_sanitize(recipient_name) if is_gift else None,
        recipient_email=email.lower() if email else None,
    )


# ──────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────

def attach_processor_session(order_id, session_id):
    """Record the Stripe checkout session on an order.

    No-op when the same session is already attached. Raises ConflictError if
    a different session is attached: a session id is never replaced.
    """
    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.processor_session_id.is_(None))
        .values(processor_session_id=session_id)
        .execution_options(synchronize_session=False)
    )
    order = _reload(order_id)
    if result.rowcount == 1:
        return order
    if order.processor_session_id == session_id:
        return order

    logger.warning(
        f"Order {order_id} already has session {order.processor_session_id}, "
        f"refusing {session_id}"
    )
    raise ConflictError("A checkout session already exists for this order.")


def mark_paid(order_id, payment_reference):
    """Transition PENDING -> PAID and store the processor payment reference.

    Idempotent: an order already PAID with the same reference is returned
    unchanged.

    Returns:
        (order, transitioned): transitioned is True only for the caller
        whose UPDATE moved the order out of PENDING.

    Raises:
        InvalidTransitionError: order is CANCELED or FAILED.
        ConflictError: order is PAID with a different reference.
    """
    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == Order.PENDING)
        .values(
            status=Order.PAID,
            processor_payment_reference=payment_reference,
            paid_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    order = _reload(order_id)
    if result.rowcount == 1:
        logger.info(f"Order {order_id} marked PAID (ref={payment_reference})")
        return order, True

    if order.status == Order.PAID:
        if order.processor_payment_reference == payment_reference:
            return order, False
        logger.error(
            f"Order {order_id} already PAID with ref={order.processor_payment_reference}, "
            f"got ref={payment_reference}"
        )
        raise ConflictError("Order was paid with a different payment.")

    raise InvalidTransitionError(
        f"Order is {order.status} and cannot be marked as paid."
    )


def mark_failed(order_id):
    """Transition PENDING -> FAILED. No-op if already FAILED."""
    order, changed = _transition(order_id, Order.FAILED)
    if changed:
        log_audit("order.failed", order_id=order_id)
        logger.info(f"Order {order_id} marked FAILED")
    return order


def cancel_order(order_id, requesting_user):
    """Cancel a PENDING order before payment (owner or admin)."""
    order = get_order(order_id, requesting_user)
    order, changed = _transition(order.id, Order.CANCELED)
    if changed:
        log_audit("order.canceled", order_id=order.id, actor_user_id=requesting_user.id)
    return order


def _transition(order_id, new_status):
    """PENDING -> new_status as a conditional update.

    Returns (order, changed); changed is False when already in new_status.
    """
    if new_status not in Order.VALID_TRANSITIONS[Order.PENDING]:
        raise InvalidTransitionError(f"Cannot move an order to {new_status}.")

    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == Order.PENDING)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    order = _reload(order_id)
    if result.rowcount == 1:
        return order, True
    if order.status == new_status:
        return order, False

    raise InvalidTransitionError(
        f"Order is {order.status} and cannot become {new_status}."
    )


def _reload(order_id):
    """Fetch the row as stored, discarding any stale identity-map state."""
    order = db.session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError("Order not found")
    return order
