"""
HTTP surface tests: webhook, admin, jobs and the signed-in user's subscription.
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from predictvip.core.exceptions import PersistenceError
from predictvip.core.settings import settings
from predictvip.api.main import app
from predictvip.db.models import Subscription, utcnow
from predictvip.db.store import SQLRecordStore, get_record_store
from tests.conftest import charge_body, make_token, sign


class BrokenStore(SQLRecordStore):
    def insert_subscription(self, subscription):
        raise PersistenceError("Failed to create subscription")


@pytest.fixture
def client(store):
    app.dependency_overrides[get_record_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(make_profile):
    user_id = make_profile("admin@predictvip.test", admin=True)
    return {"Authorization": f"Bearer {make_token(user_id, 'admin@predictvip.test')}"}


@pytest.fixture
def member_headers(make_profile):
    user_id = make_profile("member@example.com")
    return {"Authorization": f"Bearer {make_token(user_id, 'member@example.com')}"}


def post_webhook(client, body, signature=None):
    return client.post(
        "/api/webhooks/paystack",
        content=body,
        headers={"x-paystack-signature": signature if signature is not None else sign(body),
                 "Content-Type": "application/json"},
    )


class TestPaystackWebhook:

    def test_signed_charge_creates_subscription(self, client, session):
        response = post_webhook(client, charge_body(email="U@X.com", amount=850000, plan_id="1_month"))

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["outcome"] == "created"
        assert body["linked"] is False

        row = session.get(Subscription, body["subscription_id"])
        assert row.payment_email == "u@x.com"
        assert row.status == "active"

    def test_replay_returns_already_active(self, client, session):
        body = charge_body(reference="ref_replay")

        first = post_webhook(client, body)
        response = post_webhook(client, body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "already_active"
        assert response.json()["subscription_id"] == first.json()["subscription_id"]
        assert len(session.exec(select(Subscription)).all()) == 1

    def test_persistence_failure_returns_500(self, session):
        app.dependency_overrides[get_record_store] = lambda: BrokenStore(session)
        try:
            response = post_webhook(TestClient(app), charge_body(reference="ref_db_down"))
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json()["error"]["type"] == "PersistenceError"

    def test_cancellation_without_email_is_acknowledged(self, client):
        body = json.dumps({"event": "subscription.not_renew", "data": {}}).encode()

        response = post_webhook(client, body)

        assert response.status_code == 200
        assert response.json()["received"] is True

    def test_bad_signature(self, client):
        response = post_webhook(client, charge_body(), signature="deadbeef")

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "SignatureVerificationError"

    def test_missing_signature(self, client):
        response = client.post("/api/webhooks/paystack", content=charge_body())

        assert response.status_code == 401

    def test_missing_customer_email(self, client):
        body = json.dumps({"event": "charge.success", "data": {"amount": 850000}}).encode()

        response = post_webhook(client, body)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing customer email"

    def test_webhook_health(self, client):
        response = client.get("/api/webhooks/health")

        assert response.status_code == 200
        assert response.json()["providers"]["paystack"]["signature_verification"] == "enabled"


class TestAdminEndpoints:

    def test_requires_token(self, client, make_subscription):
        pending = make_subscription()

        response = client.post("/api/admin/subscriptions/activate", json={"subscription_id": pending.id})

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "AuthenticationError"

    def test_rejects_non_admin(self, client, member_headers, make_subscription):
        pending = make_subscription()

        response = client.post("/api/admin/subscriptions/activate",
                               json={"subscription_id": pending.id}, headers=member_headers)

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin access required"

    def test_activate_and_repeat(self, client, admin_headers, make_subscription):
        pending = make_subscription(plan_type="2_weeks")

        first = client.post("/api/admin/subscriptions/activate",
                            json={"subscription_id": pending.id}, headers=admin_headers)
        second = client.post("/api/admin/subscriptions/activate",
                             json={"subscription_id": pending.id}, headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["subscription"]["status"] == "active"
        assert second.status_code == 409

    def test_activate_unknown_and_cancelled(self, client, admin_headers, make_subscription):
        cancelled = make_subscription(status="cancelled")

        missing = client.post("/api/admin/subscriptions/activate",
                              json={"subscription_id": "missing"}, headers=admin_headers)
        invalid = client.post("/api/admin/subscriptions/activate",
                              json={"subscription_id": cancelled.id}, headers=admin_headers)

        assert missing.status_code == 404
        assert invalid.status_code == 400
        assert invalid.json()["error"]["type"] == "InvalidTransitionError"

    def test_bulk_activate(self, client, admin_headers, make_subscription):
        pending = make_subscription()

        response = client.post("/api/admin/subscriptions/bulk-activate",
                               json={"subscription_ids": [pending.id, "missing"]}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1
        assert response.json()["failed"] == 1

    def test_create_pending(self, client, admin_headers):
        response = client.post("/api/admin/subscriptions",
                               json={"email": "Gift@Example.com", "plan_type": "1_year", "status": "pending"},
                               headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "pending"
        assert response.json()["subscription"]["payment_email"] == "gift@example.com"

    def test_cancel(self, client, admin_headers, make_subscription):
        live = make_subscription(status="active", expires_at=utcnow() + timedelta(days=5))

        response = client.post("/api/admin/subscriptions/cancel",
                               json={"subscription_id": live.id}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "cancelled"

    def test_malformed_body(self, client, admin_headers):
        response = client.post("/api/admin/subscriptions/activate", json={}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "ValidationError"


class TestJobs:

    def test_sweep_endpoint(self, client, make_subscription):
        make_subscription(status="active", expires_at=utcnow() - timedelta(hours=1))

        response = client.post("/api/jobs/check-subscription-expiry")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["expired_subscriptions_processed"] == 1
        assert set(body) == {
            "success", "expiring_notifications_sent", "expired_subscriptions_processed", "linked_subscriptions",
        }

    def test_cron_secret_is_enforced(self, client):
        with patch.object(settings, "cron_secret", "cron-s3cret"):
            rejected = client.post("/api/jobs/check-subscription-expiry")
            accepted = client.post("/api/jobs/check-subscription-expiry",
                                   headers={"X-Cron-Secret": "cron-s3cret"})

        assert rejected.status_code == 401
        assert accepted.status_code == 200


class TestMySubscription:

    def test_payment_before_registration_is_linked_on_read(self, client, make_profile, make_subscription):
        row = make_subscription(email="early@example.com", status="active",
                                expires_at=utcnow() + timedelta(days=10))
        user_id = make_profile("early@example.com")
        headers = {"Authorization": f"Bearer {make_token(user_id, 'Early@Example.com')}"}

        response = client.get("/api/subscriptions/me", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["has_active_subscription"] is True
        assert body["subscription"]["id"] == row.id
        assert body["subscription"]["user_id"] == user_id
        assert body["subscription"]["registration_status"] == "registered"

    def test_no_subscription(self, client, member_headers):
        response = client.get("/api/subscriptions/me", headers=member_headers)

        assert response.status_code == 200
        assert response.json() == {"has_active_subscription": False, "subscription": None}

    def test_invalid_token(self, client):
        response = client.get("/api/subscriptions/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401


class TestHealth:

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
