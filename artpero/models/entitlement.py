"""Entitlement models: what a paid order grants.

- EntitlementGrant: one row per order whose entitlements were issued.
  entitlement_grants.order_id is UNIQUE; inserting it is the per-order
  serialization point that keeps two racing confirmations from issuing twice.
- Ticket: one row per purchased seat, with a unique redemption code.
- Membership: one row per user, updated in place on renewal.
"""

import uuid
from datetime import datetime, timezone

from artpero.extensions import db
from artpero.models.catalog import _iso


class EntitlementGrant(db.Model):
    __tablename__ = "entitlement_grants"

    KINDS = ["tickets", "gift_code", "membership", "entry"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), unique=True, nullable=False
    )
    kind = db.Column(db.String(20), nullable=False)
    detail = db.Column(db.JSON, default=dict)  # summary returned to callers
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="grant")

    def __repr__(self):
        return f"<EntitlementGrant order={self.order_id} ({self.kind})>"


class Ticket(db.Model):
    __tablename__ = "tickets"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    event_id = db.Column(
        db.String(36), db.ForeignKey("events.id"), nullable=False, index=True
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    code = db.Column(
        db.String(32), unique=True, nullable=False
    )  # shown as QR / typed at the door
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    order = db.relationship("EventOrder", back_populates="tickets")
    event = db.relationship("Event", back_populates="tickets")
    user = db.relationship("User", back_populates="tickets")

    @property
    def is_used(self):
        return self.used_at is not None

    def to_dict(self):
        data = {
            "id": self.id,
            "orderId": self.order_id,
            "eventId": self.event_id,
            "code": self.code,
            "used": self.is_used,
            "createdAt": _iso(self.created_at),
        }
        if self.event is not None:
            data["event"] = {
                "id": self.event.id,
                "title": self.event.title,
                "slug": self.event.slug,
                "dateStart": _iso(self.event.date_start),
                "location": self.event.location,
                "imageUrl": self.event.image_url,
            }
        return data

    def __repr__(self):
        return f"<Ticket {self.code} used={self.is_used}>"


class Membership(db.Model):
    __tablename__ = "memberships"

    # -- Valid statuses --
    STATUSES = ["NONE", "ACTIVE", "CANCELED", "PAST_DUE"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    status = db.Column(
        db.String(20), nullable=False, default="NONE"
    )  # NONE | ACTIVE | CANCELED | PAST_DUE
    plan = db.Column(db.String(255), nullable=True)  # product slug
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True)
    source_order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=True
    )  # last order that activated/renewed it
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="membership")

    @property
    def is_current(self):
        """ACTIVE and not past current_period_end."""
        if self.status != "ACTIVE" or self.current_period_end is None:
            return False
        end = self.current_period_end
        # SQLite returns naive datetimes; Postgres returns aware ones.
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) < end

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status,
            "plan": self.plan,
            "currentPeriodEnd": _iso(self.current_period_end),
            "isCurrent": self.is_current,
        }

    def __repr__(self):
        return f"<Membership user={self.user_id} {self.plan} ({self.status})>"
