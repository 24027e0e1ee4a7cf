"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid, malformed)
- Idempotent event processing (duplicate events skipped)
- checkout.session.completed / async_payment_succeeded -> reconcile
- checkout.session.expired / async_payment_failed -> FAILED
- customer.subscription.updated / deleted -> membership status
- Retryable failures answer 500 so Stripe redelivers
- Unknown event types (accepted, recorded, not processed)
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import stripe

from artpero.errors import RetryableError
from artpero.extensions import db
from artpero.models.entitlement import Membership, Ticket
from artpero.models.order import Order
from artpero.models.stripe_event import StripeEvent
from artpero.models.user import User
from artpero.services import order_service, payment_service
from artpero.services.order_service import EventTarget, ProductTarget

CONSTRUCT_EVENT = "artpero.services.stripe_service.stripe.Webhook.construct_event"


def _post(client):
    return client.post(
        "/api/webhook/stripe",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "t=1,v1=valid_sig"},
    )


def _pending_order(seed_data, quantity=2):
    user = db.session.get(User, seed_data["member_id"])
    order, _, _ = payment_service.place_order(
        user, EventTarget(seed_data["event_id"]), quantity
    )
    return order


def _session_event(event_id, event_type, order_id, payment_status="paid",
                   payment_intent="pi_webhook_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "client_reference_id": order_id,
                "payment_status": payment_status,
                "payment_intent": payment_intent,
                "metadata": {"order_id": order_id, "kind": "event"},
            }
        },
    }


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        """POST without Stripe-Signature -> 400."""
        resp = client.post(
            "/api/webhook/stripe",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing signature"
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        """Bad signature -> 400, nothing processed."""
        mock_construct.side_effect = stripe.SignatureVerificationError(
            "No signatures found", "bad_sig"
        )

        resp = _post(client)
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid signature", "code": "signature"}
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_malformed_payload_returns_400(self, mock_construct, client, seed_data):
        mock_construct.side_effect = ValueError("Invalid payload")

        resp = _post(client)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid payload"


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    @patch(CONSTRUCT_EVENT)
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data):
        """Pre-recorded event_id -> 200 with 'already_processed'."""
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="checkout.session.completed",
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_duplicate_123",
            "type": "checkout.session.completed",
            "data": {"object": {}},
        }

        resp = _post(client)
        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["status"] == "already_processed"

    @patch(CONSTRUCT_EVENT)
    def test_redelivered_completion_issues_once(self, mock_construct, client,
                                                seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_paid_1", "checkout.session.completed", order.id
        )

        assert _post(client).get_json()["status"] == "processed"
        assert _post(client).get_json()["status"] == "already_processed"

        assert Ticket.query.filter_by(order_id=order.id).count() == 2

    @patch(CONSTRUCT_EVENT)
    def test_distinct_events_for_same_order_issue_once(self, mock_construct, client,
                                                       seed_data, stripe_checkout):
        """completed + async_payment_succeeded for one order -> one ticket batch."""
        order = _pending_order(seed_data)

        mock_construct.return_value = _session_event(
            "evt_a", "checkout.session.completed", order.id
        )
        assert _post(client).status_code == 200

        mock_construct.return_value = _session_event(
            "evt_b", "checkout.session.async_payment_succeeded", order.id
        )
        assert _post(client).status_code == 200

        assert Ticket.query.filter_by(order_id=order.id).count() == 2
        assert StripeEvent.query.count() == 2


class TestCheckoutCompleted:
    """checkout.session.completed -> reconcile."""

    @patch(CONSTRUCT_EVENT)
    def test_paid_session_confirms_order(self, mock_construct, client,
                                         seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_checkout_001", "checkout.session.completed", order.id
        )

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["received"] is True

        order = db.session.get(Order, order.id)
        assert order.status == Order.PAID
        assert order.processor_payment_reference == "pi_webhook_1"
        assert Ticket.query.filter_by(order_id=order.id).count() == 2

        recorded = StripeEvent.query.filter_by(stripe_event_id="evt_checkout_001").one()
        assert recorded.order_id == order.id
        assert recorded.event_type == "checkout.session.completed"

    @patch(CONSTRUCT_EVENT)
    def test_order_id_from_client_reference(self, mock_construct, client,
                                            seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        event = _session_event("evt_ref", "checkout.session.completed", order.id)
        event["data"]["object"]["metadata"] = {}
        mock_construct.return_value = event

        assert _post(client).status_code == 200
        assert db.session.get(Order, order.id).status == Order.PAID

    @patch(CONSTRUCT_EVENT)
    def test_unpaid_completion_waits_for_async_payment(self, mock_construct, client,
                                                       seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_unpaid", "checkout.session.completed", order.id,
            payment_status="unpaid", payment_intent=None,
        )

        resp = _post(client)
        assert resp.status_code == 200
        assert db.session.get(Order, order.id).status == Order.PENDING
        assert Ticket.query.filter_by(order_id=order.id).count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_completion_for_canceled_order_is_acknowledged(self, mock_construct, client,
                                                           seed_data, stripe_checkout):
        """Redelivery can't help: 200, order stays CANCELED, no tickets."""
        order = _pending_order(seed_data)
        order_service.cancel_order(order.id, db.session.get(User, seed_data["member_id"]))
        db.session.commit()

        mock_construct.return_value = _session_event(
            "evt_late", "checkout.session.completed", order.id
        )

        resp = _post(client)
        assert resp.status_code == 200
        assert db.session.get(Order, order.id).status == Order.CANCELED
        assert Ticket.query.filter_by(order_id=order.id).count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_missing_order_reference_is_ignored(self, mock_construct, client, seed_data):
        event = _session_event("evt_orphan", "checkout.session.completed", None)
        event["data"]["object"]["metadata"] = {}
        mock_construct.return_value = event

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"

    @patch("artpero.services.payment_service.reconcile")
    @patch(CONSTRUCT_EVENT)
    def test_retryable_failure_returns_500(self, mock_construct, mock_reconcile,
                                           client, seed_data, stripe_checkout):
        """RetryableError -> 500 and the event is NOT recorded, so Stripe retries."""
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_retry", "checkout.session.completed", order.id
        )
        mock_reconcile.side_effect = RetryableError("database is locked")

        resp = _post(client)
        assert resp.status_code == 500
        assert StripeEvent.query.filter_by(stripe_event_id="evt_retry").count() == 0
        assert db.session.get(Order, order.id).status == Order.PENDING


class TestCheckoutFailed:
    """checkout.session.expired / async_payment_failed -> FAILED."""

    @patch(CONSTRUCT_EVENT)
    def test_expired_session_fails_order(self, mock_construct, client,
                                         seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_expired", "checkout.session.expired", order.id,
            payment_status="unpaid", payment_intent=None,
        )

        assert _post(client).status_code == 200
        assert db.session.get(Order, order.id).status == Order.FAILED

    @patch(CONSTRUCT_EVENT)
    def test_async_failure_fails_order(self, mock_construct, client,
                                       seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_async_fail", "checkout.session.async_payment_failed", order.id,
            payment_status="unpaid",
        )

        assert _post(client).status_code == 200
        assert db.session.get(Order, order.id).status == Order.FAILED

    @patch(CONSTRUCT_EVENT)
    def test_expiry_after_payment_keeps_order_paid(self, mock_construct, client,
                                                   seed_data, stripe_checkout):
        order = _pending_order(seed_data)
        mock_construct.return_value = _session_event(
            "evt_paid", "checkout.session.completed", order.id
        )
        _post(client)

        mock_construct.return_value = _session_event(
            "evt_expired_late", "checkout.session.expired", order.id,
        )
        assert _post(client).status_code == 200
        assert db.session.get(Order, order.id).status == Order.PAID


class TestSubscriptionEvents:
    """customer.subscription.* keep memberships in step with Stripe."""

    def _event(self, event_id, event_type, status, period_end=None):
        sub = {
            "id": "sub_clara",
            "customer": "cus_clara",
            "status": status,
        }
        if period_end is not None:
            sub["current_period_end"] = int(period_end.timestamp())
        return {"id": event_id, "type": event_type, "data": {"object": sub}}

    @patch(CONSTRUCT_EVENT)
    def test_updated_past_due(self, mock_construct, client, seed_data):
        mock_construct.return_value = self._event(
            "evt_sub_1", "customer.subscription.updated", "past_due"
        )

        assert _post(client).status_code == 200
        membership = Membership.query.filter_by(user_id=seed_data["subscriber_id"]).one()
        assert membership.status == "PAST_DUE"

    @patch(CONSTRUCT_EVENT)
    def test_deleted_cancels_membership(self, mock_construct, client, seed_data):
        mock_construct.return_value = self._event(
            "evt_sub_2", "customer.subscription.deleted", "active"
        )

        assert _post(client).status_code == 200
        membership = Membership.query.filter_by(user_id=seed_data["subscriber_id"]).one()
        assert membership.status == "CANCELED"
        assert membership.is_current is False

    @patch(CONSTRUCT_EVENT)
    def test_period_end_only_moves_forward(self, mock_construct, client, seed_data):
        membership = Membership.query.filter_by(user_id=seed_data["subscriber_id"]).one()
        original_end = membership.current_period_end

        earlier = datetime.now(timezone.utc) + timedelta(days=5)
        mock_construct.return_value = self._event(
            "evt_sub_3", "customer.subscription.updated", "active", earlier
        )
        _post(client)
        membership = Membership.query.filter_by(user_id=seed_data["subscriber_id"]).one()
        assert membership.current_period_end == original_end

        later = datetime.now(timezone.utc) + timedelta(days=60)
        mock_construct.return_value = self._event(
            "evt_sub_4", "customer.subscription.updated", "active", later
        )
        _post(client)
        membership = Membership.query.filter_by(user_id=seed_data["subscriber_id"]).one()
        end = membership.current_period_end.replace(tzinfo=timezone.utc)
        assert abs(end - later) < timedelta(seconds=1)
        assert membership.status == "ACTIVE"

    @patch(CONSTRUCT_EVENT)
    def test_unknown_subscription_is_acknowledged(self, mock_construct, client, seed_data):
        event = self._event("evt_sub_5", "customer.subscription.updated", "active")
        event["data"]["object"].update(id="sub_unknown", customer="cus_unknown")
        mock_construct.return_value = event

        assert _post(client).status_code == 200

    @patch(CONSTRUCT_EVENT)
    def test_checkout_customer_is_matched_by_later_events(self, mock_construct, client,
                                                          seed_data, stripe_checkout):
        user = db.session.get(User, seed_data["member_id"])
        order, _, _ = payment_service.place_order(
            user, ProductTarget(seed_data["subscription_id"])
        )
        completed = _session_event("evt_sub_checkout", "checkout.session.completed", order.id)
        completed["data"]["object"]["customer"] = "cus_hook"
        renewed = {
            "id": "evt_sub_6",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_hook", "customer": "cus_hook", "status": "past_due"}},
        }
        mock_construct.side_effect = [completed, renewed]

        assert _post(client).status_code == 200
        membership = Membership.query.filter_by(user_id=seed_data["member_id"]).one()
        assert membership.stripe_customer_id == "cus_hook"

        assert _post(client).status_code == 200
        membership = Membership.query.filter_by(user_id=seed_data["member_id"]).one()
        assert membership.status == "PAST_DUE"
        assert membership.stripe_subscription_id == "sub_hook"


class TestUnknownEvents:
    """Unhandled event types are accepted and recorded."""

    @patch(CONSTRUCT_EVENT)
    def test_unknown_type_recorded(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_unknown_1",
            "type": "invoice.created",
            "data": {"object": {}},
        }

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "processed"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_unknown_1").count() == 1
