"""Admin blueprint: /api/admin/*

Read-only back-office views over orders and payments.
All routes protected by @admin_required decorator.

Route Map:
  GET  /api/admin/dashboard                   Revenue and membership metrics
  GET  /api/admin/events/<id>/registrations   Orders for one event
  GET  /api/admin/payments?kind=              Payment ledger
  GET  /api/admin/activity                    Recent audit events
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from artpero.decorators import admin_required
from artpero.errors import NotFoundError
from artpero.extensions import db
from artpero.models.audit import AuditEvent
from artpero.models.catalog import Event, _iso
from artpero.models.entitlement import Membership
from artpero.models.order import EventOrder, Order
from artpero.models.payment import Payment
from artpero.models.user import User

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# ══════════════════════════════════════════════
#  DASHBOARD
# ══════════════════════════════════════════════

@admin_bp.route("/dashboard")
@admin_required
def dashboard():
    """Members, events, revenue (all-time and this month), top events by seats sold."""
    now = datetime.now(timezone.utc)
    first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    total_revenue = db.session.scalar(
        db.select(func.coalesce(func.sum(Payment.amount_cents), 0))
    )
    month_revenue = db.session.scalar(
        db.select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
            Payment.created_at >= first_of_month
        )
    )

    seats = func.sum(EventOrder.quantity).label("seats")
    top_events = db.session.execute(
        db.select(Event.title, seats)
        .join(EventOrder, EventOrder.event_id == Event.id)
        .where(EventOrder.status == Order.PAID)
        .group_by(Event.id, Event.title)
        .order_by(seats.desc())
        .limit(5)
    ).all()

    return jsonify({
        "totalMembers": User.query.count(),
        "activeMembers": Membership.query.filter_by(status="ACTIVE").count(),
        "totalEvents": Event.query.count(),
        "upcomingEvents": Event.query.filter(
            Event.status == "PUBLISHED", Event.date_start >= now
        ).count(),
        "totalRevenue": int(total_revenue or 0),
        "monthRevenue": int(month_revenue or 0),
        "totalRegistrations": EventOrder.query.filter_by(status=Order.PAID).count(),
        "topEvents": [
            {"title": title, "registrations": int(count)}
            for title, count in top_events
        ],
    })


# ══════════════════════════════════════════════
#  REGISTRATIONS
# ══════════════════════════════════════════════

@admin_bp.route("/events/<event_id>/registrations")
@admin_required
def event_registrations(event_id):
    event = db.session.get(Event, event_id)
    if event is None:
        raise NotFoundError("Event not found")

    orders = (
        EventOrder.query.filter_by(event_id=event.id)
        .order_by(EventOrder.created_at.desc())
        .all()
    )
    result = []
    for order in orders:
        data = order.to_dict()
        data.pop("event", None)
        data["user"] = order.user.to_dict()
        data["ticketCodes"] = [t.code for t in order.tickets]
        result.append(data)
    return jsonify(result)


# ══════════════════════════════════════════════
#  PAYMENTS
# ══════════════════════════════════════════════

@admin_bp.route("/payments")
@admin_required
def payments():
    kind = request.args.get("kind")
    query = Payment.query
    if kind and kind != "all":
        query = query.filter_by(kind=kind)

    rows = query.order_by(Payment.created_at.desc()).all()
    result = []
    for payment in rows:
        data = payment.to_dict()
        data["user"] = {
            "email": payment.user.email,
            "firstName": payment.user.first_name,
            "lastName": payment.user.last_name,
        }
        result.append(data)
    return jsonify(result)


@admin_bp.route("/activity")
@admin_required
def activity():
    """Last 50 audit events, newest first."""
    events = (
        AuditEvent.query.order_by(AuditEvent.created_at.desc()).limit(50).all()
    )
    return jsonify([
        {
            "id": e.id,
            "action": e.action,
            "orderId": e.order_id,
            "actorUserId": e.actor_user_id,
            "metadata": e.metadata_ or {},
            "createdAt": _iso(e.created_at),
        }
        for e in events
    ])
