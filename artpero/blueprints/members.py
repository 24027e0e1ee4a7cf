"""Members blueprint: /api/members/*

The member area: subscription, tickets, event registrations, payment
history, gift code redemption.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from artpero.extensions import db, limiter
from artpero.models.entitlement import Ticket
from artpero.models.payment import Payment
from artpero.services import gift_service, order_service
from artpero.services.membership_service import get_membership

members_bp = Blueprint("members", __name__, url_prefix="/api/members")


@members_bp.route("/membership")
@login_required
def membership():
    membership = get_membership(current_user.id)
    return jsonify(membership.to_dict() if membership else None)


@members_bp.route("/tickets")
@login_required
def tickets():
    rows = (
        Ticket.query.filter_by(user_id=current_user.id)
        .order_by(Ticket.created_at.desc())
        .all()
    )
    return jsonify([t.to_dict() for t in rows])


@members_bp.route("/registrations")
@login_required
def registrations():
    orders = order_service.list_orders_for_user(current_user.id, kind="event")
    return jsonify([o.to_dict() for o in orders])


@members_bp.route("/payments")
@login_required
def payments():
    rows = (
        Payment.query.filter_by(user_id=current_user.id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return jsonify([p.to_dict() for p in rows])


# ──────────────────────────────────────────────
# POST /api/members/redeem-gift
# ──────────────────────────────────────────────

@members_bp.route("/redeem-gift", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def redeem_gift():
    """Body: {"giftCode": "ART-XXXXXXXX"} ("code" also accepted). Single use."""
    data = request.get_json(silent=True) or {}
    code = data.get("giftCode") or data.get("code")
    try:
        redeemed = gift_service.redeem_gift_code(code, current_user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify({
        "success": True,
        "message": "Gift code redeemed",
        **redeemed,
    })
