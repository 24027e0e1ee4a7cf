"""Events blueprint: /api/events/*

Routes:
- GET  /api/events                published events (all events for admins)
- GET  /api/events/<slug>         one event with its seat count
- POST /api/events/<id>/register  create an EventOrder; free events are
                                    confirmed at once, paid ones get a
                                    Stripe Checkout URL
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func

from artpero.errors import NotFoundError
from artpero.extensions import db
from artpero.models.catalog import Event
from artpero.models.order import EventOrder, Order
from artpero.services import payment_service
from artpero.services.order_service import EventTarget, paid_ticket_count

logger = logging.getLogger(__name__)

events_bp = Blueprint("events", __name__, url_prefix="/api/events")


def _is_admin():
    return current_user.is_authenticated and current_user.is_admin


@events_bp.route("")
def list_events():
    query = Event.query
    if not _is_admin():
        query = query.filter_by(status="PUBLISHED")
    events = query.order_by(Event.date_start.asc()).all()

    sold = dict(
        db.session.execute(
            db.select(EventOrder.event_id, func.sum(EventOrder.quantity))
            .where(EventOrder.status == Order.PAID)
            .group_by(EventOrder.event_id)
        ).all()
    )
    return jsonify([
        event.to_dict(registered_count=int(sold.get(event.id) or 0))
        for event in events
    ])


@events_bp.route("/<slug>")
def get_event(slug):
    event = Event.query.filter_by(slug=slug).first()
    # Non-admins only see published events
    if event is None or (not event.is_published and not _is_admin()):
        raise NotFoundError("Event not found")
    return jsonify(event.to_dict(registered_count=paid_ticket_count(event.id)))


# ──────────────────────────────────────────────
# POST /api/events/<id>/register
# ──────────────────────────────────────────────

@events_bp.route("/<event_id>/register", methods=["POST"])
@login_required
def register(event_id):
    """Register the current user for an event.

    Body: {"quantity": 2}
    201 with the order, plus either "sessionUrl" (paid event) or
    "entitlements" (free event, tickets already issued).
    """
    data = request.get_json(silent=True) or {}
    quantity = data.get("quantity", 1)

    order, checkout_url, result = payment_service.place_order(
        current_user, EventTarget(event_id), quantity
    )

    body = {"order": order.to_dict()}
    if checkout_url:
        body["sessionUrl"] = checkout_url
    if result is not None:
        body["entitlements"] = result.entitlements
    return jsonify(body), 201
