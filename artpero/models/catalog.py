"""Catalog models.

- Event: a dated club event with a ticket price and optional capacity.
- Product: a shop item (subscription plan, single entry, gift card).

Prices are integer cents. Events are only orderable once PUBLISHED,
products only while is_active.
"""

import uuid

from artpero.extensions import db


def _iso(value):
    return value.isoformat() if value else None


class Event(db.Model):
    __tablename__ = "events"

    # -- Valid statuses --
    STATUSES = ["DRAFT", "PUBLISHED", "CANCELED"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    location = db.Column(db.String(255))
    date_start = db.Column(db.DateTime(timezone=True), nullable=False)
    date_end = db.Column(db.DateTime(timezone=True), nullable=True)
    capacity = db.Column(db.Integer, nullable=True)  # None = unlimited
    is_members_only = db.Column(db.Boolean, default=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.String(20), nullable=False, default="DRAFT"
    )  # DRAFT | PUBLISHED | CANCELED
    image_url = db.Column(db.String(1000))
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    orders = db.relationship("EventOrder", back_populates="event", lazy="dynamic")
    tickets = db.relationship("Ticket", back_populates="event", lazy="dynamic")

    @property
    def is_published(self):
        return self.status == "PUBLISHED"

    def to_dict(self, registered_count=None):
        data = {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "description": self.description,
            "location": self.location,
            "dateStart": _iso(self.date_start),
            "dateEnd": _iso(self.date_end),
            "capacity": self.capacity,
            "isMembersOnly": bool(self.is_members_only),
            "priceCents": self.price_cents,
            "status": self.status,
            "imageUrl": self.image_url,
        }
        if registered_count is not None:
            data["registeredCount"] = registered_count
        return data

    def __repr__(self):
        return f"<Event {self.slug} ({self.status})>"


class Product(db.Model):
    __tablename__ = "products"

    # -- Categories (drive which entitlement a paid order yields) --
    SUBSCRIPTION = "SUBSCRIPTION"
    ENTRY = "ENTRY"
    GIFT_CARD = "GIFT_CARD"
    CATEGORIES = [SUBSCRIPTION, ENTRY, GIFT_CARD]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    category = db.Column(
        db.String(20), nullable=False
    )  # SUBSCRIPTION | ENTRY | GIFT_CARD
    price_cents = db.Column(db.Integer, nullable=False)
    duration_months = db.Column(db.Integer, nullable=True)  # subscriptions
    events_included = db.Column(db.Integer, nullable=False, default=1)
    validity_months = db.Column(db.Integer, nullable=True)  # gift cards
    is_active = db.Column(db.Boolean, default=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # features list etc., named metadata_ to avoid the declarative clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    orders = db.relationship(
        "ProductOrder", back_populates="product", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "category": self.category,
            "priceCents": self.price_cents,
            "durationMonths": self.duration_months,
            "eventsIncluded": self.events_included,
            "validityMonths": self.validity_months,
            "isActive": bool(self.is_active),
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<Product {self.slug} ({self.category})>"
