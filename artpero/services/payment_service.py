"""Payment service: checkout entry points and payment confirmation.

Responsible for:
- Placing orders and sending buyers to Stripe Checkout
- reconcile(): the single path through which a confirmation (webhook,
  browser verify, free order) becomes a PAID order with its entitlements
- Handling incoming webhooks (idempotent via the stripe_events table)

reconcile() owns its transaction: mark_paid, entitlement issuance and the
Payment audit row are committed together or not at all. Exactly-once rests
on the database, not on in-process locks:

- mark_paid is a conditional UPDATE on status = 'PENDING'
- entitlement_grants.order_id and payments.order_id are UNIQUE

so any number of concurrent or repeated confirmations for one order end with
one PAID order, one entitlement batch and one Payment row.
"""

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError

from artpero.errors import (
    DomainError,
    InvalidTransitionError,
    NotFoundError,
    RetryableError,
    ValidationError,
)
from artpero.extensions import db
from artpero.models.order import EventOrder, Order, ProductOrder
from artpero.models.payment import Payment
from artpero.models.stripe_event import StripeEvent
from artpero.services import (
    entitlement_service,
    membership_service,
    order_service,
    stripe_service,
)
from artpero.services.audit_service import log_audit

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Confirmation triggers
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class WebhookTrigger:
    """A signature-verified Stripe event reported the session as paid."""

    payment_reference: str = None
    event_id: str = None
    customer_id: str = None


@dataclass(frozen=True)
class ClientVerifyTrigger:
    """The buyer came back from Checkout; ask Stripe before believing it."""


@dataclass(frozen=True)
class FreeOrderTrigger:
    """Zero-amount order: nothing to collect, confirm directly."""


@dataclass
class ReconcileResult:
    order: Order
    payment_status: str           # "paid", or the processor's status string
    entitlements: dict = None

    @property
    def success(self):
        return self.payment_status == "paid"

    def to_dict(self):
        return {
            "success": self.success,
            "paymentStatus": self.payment_status,
            "order": self.order.to_dict(),
            "entitlements": self.entitlements,
        }


# ──────────────────────────────────────────────
# Reconciliation
# ──────────────────────────────────────────────

def reconcile(order_id, trigger):
    """Drive an order to PAID and issue its entitlements, exactly once.

    1. Already PAID -> report success, issue nothing.
    2. WebhookTrigger -> trust the verified event's payment reference.
    3. ClientVerifyTrigger -> re-query Stripe for the session; the redirect's
       success flag is only a hint.
    4. Paid -> mark_paid, issue entitlements, record the Payment, commit.
    5. Not paid -> change nothing, return Stripe's payment_status.

    Raises:
        NotFoundError: unknown order.
        InvalidTransitionError: paid confirmation for a CANCELED/FAILED order.
        RetryableError: Stripe unreachable, or a storage conflict; nothing
            was written and the call can be repeated.
    """
    order = db.session.get(Order, order_id) if order_id else None
    if order is None:
        raise NotFoundError("Order not found")

    if order.is_paid:
        return _paid_result(order)

    if isinstance(trigger, WebhookTrigger):
        reference = trigger.payment_reference
        customer_id = trigger.customer_id
    elif isinstance(trigger, ClientVerifyTrigger):
        if order.status != Order.PENDING or not order.processor_session_id:
            return ReconcileResult(order, order.status.lower())
        state = stripe_service.retrieve_session(order.processor_session_id)
        if not state.is_paid:
            logger.info(
                f"Verify for order {order.id}: Stripe reports {state.payment_status}"
            )
            return ReconcileResult(order, state.payment_status or "unpaid")
        reference = state.payment_reference
        customer_id = state.customer
    elif isinstance(trigger, FreeOrderTrigger):
        if order.amount_due != 0:
            raise ValidationError("Order requires payment.")
        reference = None
        customer_id = None
    else:
        raise TypeError(f"Unknown reconcile trigger {trigger!r}")

    try:
        order, transitioned = order_service.mark_paid(order.id, reference)
        summary, created = entitlement_service.issue(order)
        if created:
            _record_payment(order)
            log_audit("order.paid", order_id=order.id, metadata={
                "trigger": type(trigger).__name__,
                "payment_reference": reference,
                "amount": order.amount_due,
                "entitlements": summary.get("kind"),
            })
            if summary.get("kind") == "membership" and customer_id:
                membership_service.link_stripe_customer(order.user_id, customer_id)
        db.session.commit()
    except InvalidTransitionError:
        db.session.rollback()
        logger.error(
            f"Stripe reports order {order_id} paid but it is not PENDING "
            f"(ref={reference}); needs manual refund"
        )
        raise
    except DomainError:
        db.session.rollback()
        raise
    except (IntegrityError, OperationalError) as e:
        db.session.rollback()
        logger.warning(f"Storage conflict confirming order {order_id}: {e}")
        raise RetryableError(
            "Payment confirmation is already in progress, please try again."
        ) from e

    if created:
        logger.info(
            f"Order {order.id} confirmed via {type(trigger).__name__} "
            f"(transitioned={transitioned})"
        )
        _send_confirmation(order, summary)

    return ReconcileResult(order, "paid", summary)


def _paid_result(order):
    grant = order.grant
    return ReconcileResult(order, "paid", grant.detail if grant else None)


def _record_payment(order):
    """Append the Payment audit row. Zero-amount orders collect nothing."""
    if order.amount_due == 0:
        return None
    payment = Payment(
        user_id=order.user_id,
        order_id=order.id,
        kind=order.payment_kind,
        amount_cents=order.amount_due,
        currency=order.currency,
        processor_payment_reference=order.processor_payment_reference,
        status=order.status,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def _send_confirmation(order, summary):
    """Email the buyer (and a gift recipient). Never breaks confirmation."""
    try:
        from artpero.services.email_service import send_email

        user = order.user
        kind = summary.get("kind")
        if kind == "tickets":
            send_email(
                to=user.email,
                subject=f"Vos billets — {order.event.title}",
                template="emails/tickets_confirmed.html",
                context={
                    "first_name": user.first_name or "",
                    "event": order.event,
                    "ticket_codes": summary.get("ticketCodes", []),
                },
            )
        elif kind == "gift_code":
            send_email(
                to=order.recipient_email or user.email,
                subject="Votre carte cadeau L'ArtPéro",
                template="emails/gift_code.html",
                context={
                    "recipient_name": order.recipient_name or "",
                    "sender_name": user.full_name,
                    "gift_code": summary.get("giftCode"),
                    "expires_at": order.gift_expires_at,
                    "product": order.product,
                },
            )
        elif kind == "membership":
            send_email(
                to=user.email,
                subject="Votre adhésion est active",
                template="emails/membership_activated.html",
                context={
                    "first_name": user.first_name or "",
                    "plan": summary.get("plan"),
                    "period_end": summary.get("currentPeriodEnd"),
                },
            )
    except Exception as e:
        logger.error(f"Failed to send confirmation email for order {order.id}: {e}")


# ──────────────────────────────────────────────
# Checkout entry points
# ──────────────────────────────────────────────

def _line_item(order):
    """Stripe line item for an order: unit price x quantity."""
    if isinstance(order, EventOrder):
        name = order.event.title
        description = f"{order.quantity} billet(s)"
        unit_amount = order.event.price_cents
    else:
        name = order.product.name
        description = order.product.description
        unit_amount = order.product.price_cents

    product_data = {"name": name}
    if description:
        product_data["description"] = description
    return {
        "price_data": {
            "currency": order.currency,
            "product_data": product_data,
            "unit_amount": unit_amount,
        },
        "quantity": order.quantity,
    }


def _return_urls(order):
    frontend_url = current_app.config["FRONTEND_URL"].rstrip("/")
    page = "paiement" if isinstance(order, EventOrder) else "paiement-produit"
    base = f"{frontend_url}/{page}/{order.id}"
    return f"{base}?success=true", f"{base}?canceled=true"


def _metadata(order):
    metadata = {
        "order_id": order.id,
        "user_id": order.user_id,
        "kind": order.kind,
    }
    if isinstance(order, EventOrder):
        metadata["event_id"] = order.event_id
    elif isinstance(order, ProductOrder):
        metadata["product_id"] = order.product_id
    return metadata


def start_checkout(order):
    """Open (or reopen) the Stripe Checkout Session for a PENDING order.

    An order keeps the first session attached to it. If that session is
    still open its URL is returned again; if it expired the order can't be
    paid any more and the buyer has to order again.

    Returns the hosted checkout URL.
    """
    if order.status != Order.PENDING:
        raise InvalidTransitionError(
            f"Order is {order.status.lower()} and cannot be paid."
        )

    if order.processor_session_id:
        state = stripe_service.retrieve_session(order.processor_session_id)
        if state.status == "open" and state.url:
            return state.url
        if state.is_paid:
            raise InvalidTransitionError("Order already paid.")
        raise InvalidTransitionError(
            "This checkout has expired, please place a new order."
        )

    success_url, cancel_url = _return_urls(order)
    session = stripe_service.create_checkout_session(
        _line_item(order), success_url, cancel_url, _metadata(order),
        create_customer=order.payment_kind == "subscription",
    )
    order_service.attach_processor_session(order.id, session.session_id)
    db.session.commit()

    logger.info(f"Checkout session {session.session_id} opened for order {order.id}")
    return session.redirect_url


def place_order(user, target, quantity=1, recipient_name=None, recipient_email=None):
    """Create an order and route it to payment.

    Free orders are confirmed straight away through reconcile(), so they get
    their tickets from the same issuance path as paid ones.

    A paid order is committed together with its checkout session. If Stripe
    can't open one, nothing is stored and the same request can be retried.

    Returns (order, redirect_url, result): redirect_url is None for free
    orders, result is None for paid ones.
    """
    order = order_service.create_order(
        user, target, quantity,
        recipient_name=recipient_name,
        recipient_email=recipient_email,
    )

    if order.amount_due == 0:
        db.session.commit()
        result = reconcile(order.id, FreeOrderTrigger())
        return result.order, None, result

    order_id = order.id
    try:
        redirect_url = start_checkout(order)
    except Exception:
        db.session.rollback()
        logger.warning(f"Checkout could not be opened, order {order_id} discarded")
        raise
    return order, redirect_url, None


def verify_payment(order_id, user):
    """Client verify entry point: the caller must own the order."""
    order = order_service.get_order(order_id, user)
    return reconcile(order.id, ClientVerifyTrigger())


def cancel_order(order_id, user):
    """Cancel a PENDING order, closing its Stripe checkout first.

    An open session is expired so it can no longer be paid. If Stripe
    already took the payment, the order is confirmed instead and the cancel
    is refused.

    Raises:
        InvalidTransitionError: order not PENDING, or paid at Stripe.
        RetryableError: Stripe unreachable; the order is left PENDING.
    """
    order = order_service.get_order(order_id, user)
    if order.status == Order.PENDING and order.processor_session_id:
        state = stripe_service.retrieve_session(order.processor_session_id)
        if state.is_paid:
            reconcile(order.id, ClientVerifyTrigger())
            raise InvalidTransitionError("Order was paid and cannot be canceled.")
        if state.status == "open":
            stripe_service.expire_session(order.processor_session_id)

    order = order_service.cancel_order(order.id, user)
    db.session.commit()
    logger.info(f"Order {order.id} canceled by user {user.id}")
    return order


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks stripe_events table before processing.
    If the event was already processed, returns immediately.

    Returns (success: bool, message: str). success is False only when a
    redelivery might succeed, so the endpoint answers 500 and Stripe retries.
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": _handle_checkout_completed,
        "checkout.session.async_payment_failed": _handle_checkout_failed,
        "checkout.session.expired": _handle_checkout_failed,
        "customer.subscription.updated": _handle_subscription_changed,
        "customer.subscription.deleted": _handle_subscription_changed,
    }

    order_id = None
    handler = handlers.get(event_type)
    if handler:
        try:
            order_id = handler(event)
        except RetryableError as e:
            db.session.rollback()
            logger.warning(f"Retryable failure handling {event_type} ({event_id}): {e}")
            return False, str(e)
        except DomainError as e:
            # Redelivery won't change the outcome; acknowledge and keep a trace
            db.session.rollback()
            logger.error(f"Rejected {event_type} ({event_id}): {e.message}")
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)
    else:
        logger.info(f"Unhandled webhook event type {event_type}")

    # --- Record event for idempotency ---
    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        order_id=order_id,
    )
    db.session.add(stripe_event)
    try:
        db.session.commit()
    except IntegrityError:
        # Same event delivered twice concurrently; the other copy recorded it
        db.session.rollback()
        return True, "already_processed"

    return True, "processed"


def _order_id_from_session(session):
    metadata = session.get("metadata") or {}
    return metadata.get("order_id") or session.get("client_reference_id")


def _handle_checkout_completed(event):
    """checkout.session.completed / async_payment_succeeded -> reconcile.

    Sessions paid with a delayed method complete with payment_status
    "unpaid"; those are confirmed later by async_payment_succeeded.
    """
    session = stripe_service.session_from_event(event)
    order_id = _order_id_from_session(session)
    if not order_id:
        logger.warning(f"{event['type']} without order_id metadata, ignoring")
        return None

    if session.get("payment_status") not in stripe_service.PAID_STATUSES:
        logger.info(
            f"Order {order_id}: session completed with payment_status="
            f"{session.get('payment_status')}, awaiting async payment"
        )
        return order_id

    reconcile(order_id, WebhookTrigger(
        payment_reference=stripe_service.payment_reference_from_session(session),
        event_id=event["id"],
        customer_id=stripe_service.customer_from_session(session),
    ))
    return order_id


def _handle_checkout_failed(event):
    """checkout.session.expired / async_payment_failed -> FAILED."""
    session = stripe_service.session_from_event(event)
    order_id = _order_id_from_session(session)
    if not order_id:
        logger.warning(f"{event['type']} without order_id metadata, ignoring")
        return None

    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.is_paid:
        logger.info(f"{event['type']} for already-paid order {order_id}, ignoring")
        return order_id

    order_service.mark_failed(order_id)
    db.session.commit()
    return order_id


def _handle_subscription_changed(event):
    """customer.subscription.updated / deleted -> membership status."""
    sub_data = event["data"]["object"]
    if event["type"] == "customer.subscription.deleted":
        sub_data = dict(sub_data, status="canceled")
    membership_service.sync_subscription(sub_data)
    db.session.commit()
    return None
