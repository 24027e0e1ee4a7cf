"""Payment model (append-only audit record).

One row per confirmed order, written by the reconciler in the same
savepoint as the entitlement grant. payments.order_id is UNIQUE so a replay
can never record the same confirmation twice. Rows are never updated.
"""

import uuid

from artpero.extensions import db
from artpero.models.catalog import _iso


class Payment(db.Model):
    __tablename__ = "payments"

    KINDS = ["event", "product", "subscription"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), unique=True, nullable=False
    )
    kind = db.Column(db.String(20), nullable=False)  # event | product | subscription
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="eur")
    processor_payment_reference = db.Column(
        db.String(255), nullable=True
    )  # e.g. "pi_3Abc..."
    status = db.Column(
        db.String(20), nullable=False
    )  # order status snapshot at recording time
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="payments")
    order = db.relationship("Order")

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "kind": self.kind,
            "amountCents": self.amount_cents,
            "currency": self.currency,
            "processorPaymentReference": self.processor_payment_reference,
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment {self.kind} {self.amount_cents} ({self.status})>"
