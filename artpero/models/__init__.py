# Models package: import all models here so Alembic can discover them.

from artpero.models.user import User  # noqa: F401
from artpero.models.catalog import Event, Product  # noqa: F401
from artpero.models.order import Order, EventOrder, ProductOrder  # noqa: F401
from artpero.models.entitlement import (  # noqa: F401
    EntitlementGrant,
    Membership,
    Ticket,
)
from artpero.models.payment import Payment  # noqa: F401
from artpero.models.stripe_event import StripeEvent  # noqa: F401
from artpero.models.audit import AuditEvent  # noqa: F401
