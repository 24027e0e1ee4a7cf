"""Gift service: gift code lookup and single-use redemption.

A gift code lives on the PAID gift-card ProductOrder that produced it.
Redemption is a conditional update on gift_code_used_at IS NULL, so two
concurrent redemptions of the same code can't both succeed.

Functions flush but do NOT commit; the caller commits.
"""

import logging

from sqlalchemy import update

from artpero.errors import GiftExpiredError, NotFoundError, ValidationError
from artpero.extensions import db
from artpero.models.order import Order, ProductOrder
from artpero.services.audit_service import log_audit
from artpero.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


def normalize_code(code):
    return (code or "").strip().upper()


def lookup_gift_code(code):
    """Return the PAID gift-card order carrying this code, or None."""
    normalized = normalize_code(code)
    if not normalized:
        return None
    return ProductOrder.query.filter_by(
        gift_code=normalized, status=Order.PAID
    ).first()


def redeem_gift_code(code, user):
    """Mark a gift code as used and return what it grants.

    Raises:
        ValidationError: no code given.
        NotFoundError: unknown, unpaid or already used code.
        GiftExpiredError: past gift_expires_at.
    """
    if not normalize_code(code):
        raise ValidationError("Gift code required")

    order = lookup_gift_code(code)
    if order is None or order.is_gift_code_used:
        raise NotFoundError("Invalid or already used gift code")

    expires_at = as_utc(order.gift_expires_at)
    if expires_at is not None and utcnow() > expires_at:
        raise GiftExpiredError("Gift code has expired")

    result = db.session.execute(
        update(ProductOrder)
        .where(
            ProductOrder.id == order.id,
            ProductOrder.gift_code_used_at.is_(None),
        )
        .values(gift_code_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another request redeemed it between our read and our write
        raise NotFoundError("Invalid or already used gift code")

    db.session.refresh(order)
    events_included = order.product.events_included or 1

    log_audit("gift.redeemed", order_id=order.id, actor_user_id=user.id, metadata={
        "gift_code": order.gift_code,
        "events_included": events_included,
    })
    logger.info(f"Gift code {order.gift_code} redeemed by user {user.id}")

    return {
        "giftCode": order.gift_code,
        "eventsIncluded": events_included,
    }
