"""Tests for the admin blueprint.

Covers:
- Auth guards (anonymous 401, non-admin 403)
- Dashboard (members, events, revenue, top events)
- Registrations for one event
- Payment ledger, filtered by kind
- Recent activity from the audit log
"""

import pytest

from artpero.extensions import db
from artpero.models.user import User
from artpero.services import payment_service
from artpero.services.order_service import EventTarget, ProductTarget
from artpero.services.payment_service import WebhookTrigger

ADMIN = "admin@lartpero.local"


def _paid(seed_data, user_key, target, quantity=1):
    user = db.session.get(User, seed_data[user_key])
    order, _, _ = payment_service.place_order(user, target, quantity)
    payment_service.reconcile(order.id, WebhookTrigger(f"pi_{order.id[:8]}"))
    return order.id


@pytest.fixture
def sales(seed_data, stripe_checkout):
    """Alice: 2 vernissage seats. Bob: 1 seat and a gift card. Clara: a free seat."""
    return {
        "alice_order": _paid(seed_data, "member_id", EventTarget(seed_data["event_id"]), 2),
        "bob_order": _paid(seed_data, "other_id", EventTarget(seed_data["event_id"]), 1),
        "gift_order": _paid(seed_data, "other_id", ProductTarget(seed_data["gift_id"])),
        "free_order": _paid(seed_data, "subscriber_id", EventTarget(seed_data["free_event_id"])),
    }


# ══════════════════════════════════════════════
#  AUTH GUARDS
# ══════════════════════════════════════════════

class TestAuthGuards:
    """Every admin route needs an admin session."""

    PATHS = ["/api/admin/dashboard", "/api/admin/payments", "/api/admin/activity"]

    def test_anonymous_gets_401(self, client, seed_data):
        for path in self.PATHS:
            resp = client.get(path)
            assert resp.status_code == 401, path
            assert resp.get_json()["code"] == "unauthorized"

    def test_member_gets_403(self, client, seed_data, login):
        login("alice@example.com")
        for path in self.PATHS:
            assert client.get(path).status_code == 403, path

        resp = client.get(f"/api/admin/events/{seed_data['event_id']}/registrations")
        assert resp.status_code == 403


# ══════════════════════════════════════════════
#  DASHBOARD
# ══════════════════════════════════════════════

class TestDashboard:

    def test_empty_dashboard(self, client, seed_data, login):
        login(ADMIN)
        data = client.get("/api/admin/dashboard").get_json()

        assert data["totalMembers"] == 4
        assert data["activeMembers"] == 1
        assert data["totalEvents"] == 5
        assert data["upcomingEvents"] == 4
        assert data["totalRevenue"] == 0
        assert data["totalRegistrations"] == 0
        assert data["topEvents"] == []

    def test_dashboard_after_sales(self, client, seed_data, login, sales):
        login(ADMIN)
        data = client.get("/api/admin/dashboard").get_json()

        # 2 * 4900 + 4900 + 5500; the free seat records no payment
        assert data["totalRevenue"] == 20200
        assert data["monthRevenue"] == 20200
        assert data["totalRegistrations"] == 3
        assert data["topEvents"][0] == {"title": "Vernissage", "registrations": 3}
        assert {"title": "Apero Gratuit", "registrations": 1} in data["topEvents"]

    def test_pending_orders_do_not_count(self, client, seed_data, login, stripe_checkout):
        user = db.session.get(User, seed_data["member_id"])
        payment_service.place_order(user, EventTarget(seed_data["event_id"]), 2)

        login(ADMIN)
        data = client.get("/api/admin/dashboard").get_json()
        assert data["totalRevenue"] == 0
        assert data["totalRegistrations"] == 0


# ══════════════════════════════════════════════
#  REGISTRATIONS
# ══════════════════════════════════════════════

class TestRegistrations:

    def test_lists_orders_with_buyer_and_tickets(self, client, seed_data, login, sales):
        login(ADMIN)
        resp = client.get(f"/api/admin/events/{seed_data['event_id']}/registrations")
        assert resp.status_code == 200

        rows = {r["id"]: r for r in resp.get_json()}
        assert set(rows) == {sales["alice_order"], sales["bob_order"]}

        alice = rows[sales["alice_order"]]
        assert alice["user"]["email"] == "alice@example.com"
        assert alice["status"] == "PAID"
        assert len(alice["ticketCodes"]) == 2
        assert "event" not in alice

    def test_unknown_event_is_404(self, client, seed_data, login):
        login(ADMIN)
        resp = client.get("/api/admin/events/nope/registrations")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Event not found"


# ══════════════════════════════════════════════
#  PAYMENTS
# ══════════════════════════════════════════════

class TestPayments:

    def test_lists_all_payments(self, client, seed_data, login, sales):
        login(ADMIN)
        payments = client.get("/api/admin/payments").get_json()

        assert len(payments) == 3
        assert sum(p["amountCents"] for p in payments) == 20200
        assert all(p["status"] == "PAID" for p in payments)
        emails = {p["user"]["email"] for p in payments}
        assert emails == {"alice@example.com", "bob@example.com"}

    def test_filter_by_kind(self, client, seed_data, login, sales):
        login(ADMIN)

        products = client.get("/api/admin/payments?kind=product").get_json()
        assert [p["orderId"] for p in products] == [sales["gift_order"]]

        events = client.get("/api/admin/payments?kind=event").get_json()
        assert len(events) == 2

        assert len(client.get("/api/admin/payments?kind=all").get_json()) == 3
        assert client.get("/api/admin/payments?kind=subscription").get_json() == []


# ══════════════════════════════════════════════
#  ACTIVITY
# ══════════════════════════════════════════════

class TestActivity:

    def test_records_order_lifecycle(self, client, seed_data, login, sales):
        login(ADMIN)
        events = client.get("/api/admin/activity").get_json()

        actions = [e["action"] for e in events]
        assert actions.count("order.created") == 4
        assert actions.count("order.paid") == 4

        paid = [e for e in events if e["action"] == "order.paid"]
        assert {e["orderId"] for e in paid} == set(sales.values())
        # Webhook-driven confirmations have no acting user
        assert all(e["actorUserId"] is None for e in paid)
