"""
Tests for Paystack webhook ingestion.

Tests cover:
- HMAC-SHA512 signature verification
- Plan derivation priority
- Idempotent replay and renewal payments
- Gateway cancellation events
- Best-effort notifications
"""

import json
from datetime import timedelta

import httpx
import pytest
from sqlmodel import select

from predictvip.core.exceptions import SignatureVerificationError, ValidationError
from predictvip.core.settings import settings
from predictvip.api.services.notifications import NotificationDispatcher
from predictvip.api.services.payments import (
    PaymentEventIngestor,
    derive_plan_type,
    verify_paystack_signature,
)
from predictvip.db.models import Notification, Subscription
from tests.conftest import NOW, charge_body, sign


@pytest.fixture
def ingestor(store, state_machine, notifier):
    return PaymentEventIngestor(store, state_machine=state_machine, notifier=notifier)


def all_subscriptions(session):
    return list(session.exec(select(Subscription)).all())


class TestSignatureVerification:

    def test_valid_signature(self):
        body = b'{"event":"charge.success"}'
        assert verify_paystack_signature(body, sign(body)) is True

    def test_tampered_body(self):
        body = b'{"event":"charge.success"}'
        assert verify_paystack_signature(body + b" ", sign(body)) is False

    def test_missing_header_fails_closed(self):
        assert verify_paystack_signature(b"{}", None) is False
        assert verify_paystack_signature(b"{}", "") is False

    def test_missing_secret_fails_closed(self):
        body = b"{}"
        assert verify_paystack_signature(body, sign(body, "whatever"), secret="") is False


class TestPlanDerivation:

    def test_metadata_wins_over_amount(self):
        data = {"amount": 850000, "metadata": {"plan_id": "6_months"}}
        assert derive_plan_type(data) == "6_months"

    def test_amount_when_no_metadata(self):
        assert derive_plan_type({"amount": 450000}) == "2_weeks"

    def test_plan_code_when_amount_unknown(self):
        data = {"amount": 100, "plan": {"plan_code": "PLN_yearly"}}
        assert derive_plan_type(data) == "1_year"

    def test_metadata_plan_type_as_last_hint(self):
        assert derive_plan_type({"metadata": {"plan_type": "6months"}}) == "6_months"

    def test_metadata_sent_as_json_string(self):
        data = {"metadata": json.dumps({"plan_id": "1_year"})}
        assert derive_plan_type(data) == "1_year"

    def test_default_plan(self):
        assert derive_plan_type({}) == "1_month"


class TestChargeSuccess:

    @pytest.mark.asyncio
    async def test_creates_active_subscription(self, ingestor, session, email_outbox):
        body = charge_body(email="U@X.com", amount=850000, plan_id="1_month")

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "created"
        rows = all_subscriptions(session)
        assert len(rows) == 1
        row = rows[0]
        assert row.payment_email == "u@x.com"
        assert row.plan_type == "1_month"
        assert row.status == "active"
        assert row.expires_at == NOW + timedelta(days=30)

        assert len(email_outbox) == 1
        payload = email_outbox[0]["payload"]
        assert payload["type"] == "subscription_activated"
        assert payload["recipient_email"] == "u@x.com"
        assert payload["plan_type"] == "1_month"
        assert payload["expires_at"] == row.expires_at.isoformat()

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, ingestor, session):
        body = charge_body()

        first = await ingestor.ingest(body, sign(body))
        replays = [await ingestor.ingest(body, sign(body)) for _ in range(3)]

        assert first.outcome == "created"
        assert [r.outcome for r in replays] == ["already_active"] * 3
        assert all(r.to_response()["received"] for r in replays)
        rows = all_subscriptions(session)
        assert len(rows) == 1
        assert rows[0].expires_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_replayed_reference_is_ignored_after_expiry(self, ingestor, session, clock):
        body = charge_body(reference="ref_1")
        await ingestor.ingest(body, sign(body))

        clock.advance(days=45)
        ingestor.state_machine.expire_overdue()
        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "already_active"
        assert len(all_subscriptions(session)) == 1

    @pytest.mark.asyncio
    async def test_new_reference_renews_live_subscription(self, ingestor, session, clock):
        first = charge_body(reference="ref_1")
        await ingestor.ingest(first, sign(first))

        clock.advance(days=10)
        second = charge_body(reference="ref_2")
        result = await ingestor.ingest(second, sign(second))

        assert result.outcome == "renewed"
        rows = all_subscriptions(session)
        assert len(rows) == 1
        assert rows[0].expires_at == NOW + timedelta(days=60)
        assert rows[0].payment_reference == "ref_2"

    @pytest.mark.asyncio
    async def test_different_plan_creates_second_subscription(self, ingestor, session):
        monthly = charge_body(plan_id="1_month", reference="ref_1")
        yearly = charge_body(plan_id="1_year", amount=5500000, reference="ref_2")

        await ingestor.ingest(monthly, sign(monthly))
        result = await ingestor.ingest(yearly, sign(yearly))

        assert result.outcome == "created"
        assert sorted(s.plan_type for s in all_subscriptions(session)) == ["1_month", "1_year"]

    @pytest.mark.asyncio
    async def test_payment_activates_pending_grant(self, ingestor, make_subscription, session):
        pending = make_subscription(email="u@x.com", plan_type="1_month")
        body = charge_body()

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "activated"
        assert result.subscription.id == pending.id
        assert len(all_subscriptions(session)) == 1
        assert session.get(Subscription, pending.id).status == "active"

    @pytest.mark.asyncio
    async def test_registered_payer_is_linked_and_notified_in_app(self, ingestor, make_profile, session):
        user_id = make_profile("u@x.com")
        body = charge_body()

        result = await ingestor.ingest(body, sign(body))

        assert result.subscription.user_id == user_id
        assert result.to_response()["linked"] is True
        notifications = list(session.exec(select(Notification)).all())
        assert len(notifications) == 1
        assert notifications[0].user_id == user_id
        assert notifications[0].type == "subscription_activated"

    @pytest.mark.asyncio
    async def test_replay_links_payer_who_registered_later(self, ingestor, make_profile, session):
        body = charge_body(reference="ref_1")
        first = await ingestor.ingest(body, sign(body))
        assert first.subscription.user_id is None

        user_id = make_profile("u@x.com")
        replay = await ingestor.ingest(body, sign(body))

        assert replay.outcome == "already_active"
        assert replay.subscription.id == first.subscription.id
        assert replay.subscription.user_id == user_id
        assert replay.subscription.registration_status == "registered"
        assert len(all_subscriptions(session)) == 1

    @pytest.mark.asyncio
    async def test_unreferenced_duplicate_links_payer(self, ingestor, make_profile):
        body = charge_body()
        first = await ingestor.ingest(body, sign(body))

        user_id = make_profile("U@X.com")
        duplicate = await ingestor.ingest(body, sign(body))

        assert duplicate.outcome == "already_active"
        assert duplicate.subscription.id == first.subscription.id
        assert duplicate.to_response()["linked"] is True
        assert duplicate.subscription.user_id == user_id

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_ingestion(self, store, state_machine, session):
        def failing(request):
            return httpx.Response(503, json={"error": "down"})

        notifier = NotificationDispatcher(store, transport=httpx.MockTransport(failing))
        ingestor = PaymentEventIngestor(store, state_machine=state_machine, notifier=notifier)
        body = charge_body()

        original = settings.notification_email_url
        settings.notification_email_url = "https://notify.predictvip.test/send"
        try:
            result = await ingestor.ingest(body, sign(body))
        finally:
            settings.notification_email_url = original

        assert result.outcome == "created"
        assert len(all_subscriptions(session)) == 1


class TestRejections:

    @pytest.mark.asyncio
    async def test_bad_signature(self, ingestor, session):
        body = charge_body()

        with pytest.raises(SignatureVerificationError):
            await ingestor.ingest(body, "0" * 128)
        with pytest.raises(SignatureVerificationError):
            await ingestor.ingest(body, None)
        assert all_subscriptions(session) == []

    @pytest.mark.asyncio
    async def test_invalid_json(self, ingestor):
        body = b"not json"
        with pytest.raises(ValidationError):
            await ingestor.ingest(body, sign(body))

    @pytest.mark.asyncio
    async def test_missing_email(self, ingestor, session):
        body = json.dumps({"event": "charge.success", "data": {"amount": 850000}}).encode()

        with pytest.raises(ValidationError) as exc_info:
            await ingestor.ingest(body, sign(body))
        assert exc_info.value.status_code == 400
        assert all_subscriptions(session) == []


class TestOtherEvents:

    @pytest.mark.asyncio
    async def test_cancellation_events(self, ingestor, make_subscription):
        live = make_subscription(email="u@x.com", status="active", expires_at=NOW + timedelta(days=20))
        body = json.dumps({
            "event": "subscription.disable",
            "data": {"customer": {"email": "U@X.com"}, "subscription_code": "SUB_123"},
        }).encode()

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "cancelled"
        assert result.cancelled_count == 1
        assert ingestor.store.get_subscription(live.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_not_renew_without_active_rows(self, ingestor):
        body = json.dumps({
            "event": "subscription.not_renew",
            "data": {"customer": {"email": "nobody@example.com"}},
        }).encode()

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "cancelled"
        assert result.cancelled_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_without_email_is_acknowledged(self, ingestor, make_subscription):
        live = make_subscription(email="u@x.com", status="active", expires_at=NOW + timedelta(days=20))
        body = json.dumps({"event": "subscription.disable", "data": {"subscription_code": "SUB_123"}}).encode()

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "received"
        assert result.to_response()["received"] is True
        assert ingestor.store.get_subscription(live.id).status == "active"

    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, ingestor, session):
        body = json.dumps({"event": "transfer.success", "data": {}}).encode()

        result = await ingestor.ingest(body, sign(body))

        assert result.outcome == "received"
        assert result.to_response()["received"] is True
        assert all_subscriptions(session) == []
