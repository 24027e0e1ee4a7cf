"""Products blueprint: /api/products/*

The shop: subscriptions, single entries and gift cards.

Routes:
- GET  /api/products                 active products, cheapest first
- GET  /api/products/orders          the current user's product orders
- GET  /api/products/<slug>          one active product
- POST /api/products/checkout        create a ProductOrder + Checkout Session
- POST /api/products/verify-payment  confirm on return from Stripe
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from artpero.errors import NotFoundError, ValidationError
from artpero.extensions import limiter
from artpero.models.catalog import Product
from artpero.services import order_service, payment_service
from artpero.services.order_service import ProductTarget

logger = logging.getLogger(__name__)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.route("")
def list_products():
    products = (
        Product.query.filter_by(is_active=True)
        .order_by(Product.price_cents.asc())
        .all()
    )
    return jsonify([p.to_dict() for p in products])


@products_bp.route("/orders")
@login_required
def my_orders():
    orders = order_service.list_orders_for_user(current_user.id, kind="product")
    return jsonify([o.to_dict() for o in orders])


@products_bp.route("/<slug>")
def get_product(slug):
    product = Product.query.filter_by(slug=slug, is_active=True).first()
    if product is None:
        raise NotFoundError("Product not found")
    return jsonify(product.to_dict())


# ──────────────────────────────────────────────
# POST /api/products/checkout
# ──────────────────────────────────────────────

@products_bp.route("/checkout", methods=["POST"])
@login_required
def checkout():
    """Body: {"productId", "quantity"?, "recipientName"?, "recipientEmail"?}

    Answers {"orderId", "sessionId", "sessionUrl"}; a zero-priced product is
    confirmed directly and answers its entitlements instead.
    """
    data = request.get_json(silent=True) or {}
    product_id = data.get("productId")
    if not product_id:
        raise ValidationError("productId is required.")

    order, checkout_url, result = payment_service.place_order(
        current_user,
        ProductTarget(product_id),
        data.get("quantity", 1),
        recipient_name=data.get("recipientName"),
        recipient_email=data.get("recipientEmail"),
    )

    body = {"orderId": order.id, "order": order.to_dict()}
    if checkout_url:
        body["sessionId"] = order.processor_session_id
        body["sessionUrl"] = checkout_url
    if result is not None:
        body["entitlements"] = result.entitlements
    return jsonify(body), 201


# ──────────────────────────────────────────────
# POST /api/products/verify-payment
# ──────────────────────────────────────────────

@products_bp.route("/verify-payment", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def verify_payment():
    """Body: {"orderId"}. Asks Stripe, never trusts the redirect."""
    data = request.get_json(silent=True) or {}
    order_id = data.get("orderId")
    if not order_id:
        raise ValidationError("orderId is required.")

    result = payment_service.verify_payment(order_id, current_user)
    return jsonify(result.to_dict())
