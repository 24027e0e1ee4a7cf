"""Stripe event model (webhook idempotency table).

Every handled webhook is recorded by its Stripe event ID. A redelivered
event whose ID is already here is acknowledged without being dispatched
again. Order-level idempotency lives in entitlement_grants; this table only
saves the round trip through the reconciler.
"""

import uuid

from artpero.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    order_id = db.Column(
        db.String(36), nullable=True
    )  # from session metadata, when the event concerns an order
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
