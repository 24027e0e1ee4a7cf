"""Orders blueprint: /api/orders/<id>/*

Works for both event and product orders; callers only see their own
orders (admins see all).

Routes:
- GET  /api/orders/<id>           order status (polled by /paiement pages)
- POST /api/orders/<id>/checkout  (re)open the Stripe Checkout for a PENDING order
- POST /api/orders/<id>/verify    confirm on return from Stripe
- POST /api/orders/<id>/cancel    cancel before payment, closing the Stripe checkout
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from artpero.extensions import limiter
from artpero.services import order_service, payment_service

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.route("/<order_id>")
@login_required
def get_order(order_id):
    order = order_service.get_order(order_id, current_user)
    body = order.to_dict()
    body["entitlements"] = order.grant.detail if order.grant else None
    return jsonify(body)


@orders_bp.route("/<order_id>/checkout", methods=["POST"])
@login_required
def checkout(order_id):
    order = order_service.get_order(order_id, current_user)
    checkout_url = payment_service.start_checkout(order)
    return jsonify({
        "orderId": order.id,
        "sessionId": order.processor_session_id,
        "sessionUrl": checkout_url,
    })


@orders_bp.route("/<order_id>/verify", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def verify(order_id):
    result = payment_service.verify_payment(order_id, current_user)
    return jsonify(result.to_dict())


@orders_bp.route("/<order_id>/cancel", methods=["POST"])
@login_required
def cancel(order_id):
    order = payment_service.cancel_order(order_id, current_user)
    return jsonify(order.to_dict())
