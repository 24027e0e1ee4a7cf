"""Order models.

One `orders` table, two kinds of purchase intent (single-table inheritance
on `kind`):

- EventOrder: a registration for N tickets to an event.
- ProductOrder: a shop purchase (subscription, entry, gift card).

Both share the payment lifecycle PENDING -> PAID | FAILED | CANCELED.
Status transitions are enforced in order_service; nothing else writes
status, processor_payment_reference or gift_code.
Orders are financial records and are never deleted.
"""

import uuid

from artpero.extensions import db
from artpero.models.catalog import _iso


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid statuses --
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    STATUSES = [PENDING, PAID, FAILED, CANCELED]
    TERMINAL_STATUSES = [PAID, FAILED, CANCELED]

    # -- Valid status transitions (enforced in order_service) --
    VALID_TRANSITIONS = {
        PENDING: [PAID, FAILED, CANCELED],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    kind = db.Column(db.String(20), nullable=False)  # event | product
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    amount_due = db.Column(db.Integer, nullable=False)  # cents
    currency = db.Column(db.String(3), nullable=False, default="eur")
    status = db.Column(
        db.String(20), nullable=False, default=PENDING, index=True
    )  # PENDING | PAID | FAILED | CANCELED
    processor_session_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # Stripe checkout session, immutable once set
    processor_payment_reference = db.Column(
        db.String(255), nullable=True
    )  # Stripe payment intent, set on confirmation
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="orders")
    grant = db.relationship(
        "EntitlementGrant", back_populates="order", uselist=False
    )

    __mapper_args__ = {
        "polymorphic_on": kind,
        "polymorphic_abstract": True,
    }

    @property
    def is_paid(self):
        return self.status == self.PAID

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def payment_kind(self):
        """Kind tag written on the Payment audit row."""
        raise NotImplementedError

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "userId": self.user_id,
            "quantity": self.quantity,
            "amountDue": self.amount_due,
            "currency": self.currency,
            "status": self.status,
            "processorSessionId": self.processor_session_id,
            "paidAt": _iso(self.paid_at),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} ({self.status})>"


class EventOrder(Order):
    """Registration for `quantity` tickets to one event."""

    event_id = db.Column(
        db.String(36), db.ForeignKey("events.id"), nullable=True, index=True
    )

    event = db.relationship("Event", back_populates="orders")
    tickets = db.relationship(
        "Ticket", back_populates="order", lazy="dynamic"
    )

    __mapper_args__ = {"polymorphic_identity": "event"}

    @property
    def payment_kind(self):
        return "event"

    def to_dict(self):
        data = super().to_dict()
        data["eventId"] = self.event_id
        if self.event is not None:
            data["event"] = self.event.to_dict()
        return data


class ProductOrder(Order):
    """Shop purchase. Gift fields are only set for GIFT_CARD products."""

    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=True, index=True
    )
    recipient_name = db.Column(db.String(255), nullable=True)
    recipient_email = db.Column(db.String(255), nullable=True)
    gift_code = db.Column(
        db.String(32), unique=True, nullable=True
    )  # assigned once, at confirmation
    gift_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    gift_code_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product", back_populates="orders")

    __mapper_args__ = {"polymorphic_identity": "product"}

    @property
    def payment_kind(self):
        if self.product is not None and self.product.category == "SUBSCRIPTION":
            return "subscription"
        return "product"

    @property
    def is_gift_code_used(self):
        return self.gift_code_used_at is not None

    def to_dict(self):
        data = super().to_dict()
        data.update({
            "productId": self.product_id,
            "recipientName": self.recipient_name,
            "recipientEmail": self.recipient_email,
            "giftCode": self.gift_code,
            "giftExpiresAt": _iso(self.gift_expires_at),
            "giftCodeUsed": self.is_gift_code_used,
        })
        if self.product is not None:
            data["product"] = self.product.to_dict()
        return data
