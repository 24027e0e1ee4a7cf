"""Shared test fixtures for the Art'Péro API test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: admin, members, events and shop products (plain ids)
- login: helper that logs a client in as one of the seeded users
- stripe_checkout: patched Stripe Checkout Session create/retrieve
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from werkzeug.security import generate_password_hash

from artpero import create_app
from artpero.extensions import db as _db
from artpero.models.catalog import Event, Product
from artpero.models.entitlement import Membership
from artpero.models.user import User

PASSWORD = "s3cret-pass"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after.

    The app context stays pushed for the whole test, so requests made with
    the test client share this session with the test body.
    """
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def _user(email, first_name, is_admin=False):
    user = User(
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        first_name=first_name,
        last_name="Test",
        is_admin=is_admin,
    )
    _db.session.add(user)
    return user


def _event(slug, price_cents, capacity=None, status="PUBLISHED", members_only=False):
    event = Event(
        title=slug.replace("-", " ").title(),
        slug=slug,
        location="Paris 8e",
        date_start=datetime.now(timezone.utc) + timedelta(days=14),
        capacity=capacity,
        price_cents=price_cents,
        status=status,
        is_members_only=members_only,
    )
    _db.session.add(event)
    return event


@pytest.fixture
def seed_data(db_session):
    """Seed users, events and products.

    Returns plain ids so tests can reload whatever they need.
    """
    admin = _user("admin@lartpero.local", "Admin", is_admin=True)
    member = _user("alice@example.com", "Alice")
    other = _user("bob@example.com", "Bob")
    subscriber = _user("clara@example.com", "Clara")

    # --- Events ---
    vernissage = _event("vernissage", 4900, capacity=10)
    free_event = _event("apero-gratuit", 0, capacity=50)
    small_event = _event("diner-prive", 2500, capacity=2)
    members_event = _event("soiree-membres", 3000, members_only=True)
    draft_event = _event("brouillon", 1000, status="DRAFT")

    # --- Products ---
    premium = Product(
        name="Abonnement Premium", slug="abonnement-premium",
        category=Product.SUBSCRIPTION, price_cents=24000,
        duration_months=3, events_included=3,
    )
    entry = Product(
        name="Entrée Découverte", slug="entree-decouverte",
        category=Product.ENTRY, price_cents=4900, events_included=1,
    )
    gift = Product(
        name="Carte cadeau", slug="artpero-gift",
        category=Product.GIFT_CARD, price_cents=5500,
        events_included=1, validity_months=6,
    )
    retired = Product(
        name="Ancienne offre", slug="ancienne-offre",
        category=Product.ENTRY, price_cents=1000, is_active=False,
    )
    _db.session.add_all([premium, entry, gift, retired])
    _db.session.flush()

    # --- Current membership for the subscriber ---
    _db.session.add(Membership(
        user_id=subscriber.id,
        status="ACTIVE",
        plan="abonnement-premium",
        current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        stripe_customer_id="cus_clara",
        stripe_subscription_id="sub_clara",
    ))
    _db.session.commit()

    return {
        "admin_id": admin.id,
        "member_id": member.id,
        "other_id": other.id,
        "subscriber_id": subscriber.id,
        "event_id": vernissage.id,
        "free_event_id": free_event.id,
        "small_event_id": small_event.id,
        "members_event_id": members_event.id,
        "draft_event_id": draft_event.id,
        "subscription_id": premium.id,
        "entry_id": entry.id,
        "gift_id": gift.id,
        "retired_id": retired.id,
    }


@pytest.fixture
def login(client):
    """Log the test client in: login("alice@example.com")."""

    def _login(email):
        resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login


@pytest.fixture
def stripe_checkout():
    """Patch Stripe Checkout Session create/retrieve/expire.

    create returns session cs_test_<n>; retrieve returns
    stripe_checkout.session_state; stripe_checkout.pay() and .expire()
    change what Stripe reports. stripe_checkout.expire_session is the
    patched Session.expire.
    """
    counter = {"n": 0}

    def _create(**params):
        counter["n"] += 1
        session_id = f"cs_test_{counter['n']}"
        return MagicMock(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")

    with patch(
        "artpero.services.stripe_service.stripe.checkout.Session.create",
        side_effect=_create,
    ) as create, patch(
        "artpero.services.stripe_service.stripe.checkout.Session.retrieve",
    ) as retrieve, patch(
        "artpero.services.stripe_service.stripe.checkout.Session.expire",
    ) as expire_session:
        state = {
            "payment_status": "unpaid",
            "payment_intent": None,
            "status": "open",
            "url": "https://checkout.stripe.com/c/pay/cs_test_1",
            "customer": None,
        }
        retrieve.side_effect = lambda session_id: dict(state, id=session_id)

        def pay(payment_intent="pi_test_1", customer=None):
            """Make Stripe report the session as paid."""
            state.update(
                payment_status="paid", payment_intent=payment_intent,
                status="complete", customer=customer,
            )

        def expire():
            state.update(status="expired", url=None)

        def _expire_session(session_id):
            expire()
            return dict(state, id=session_id)

        expire_session.side_effect = _expire_session

        mocks = MagicMock(
            create=create, retrieve=retrieve, expire_session=expire_session,
            session_state=state,
        )
        mocks.pay = pay
        mocks.expire = expire
        yield mocks
