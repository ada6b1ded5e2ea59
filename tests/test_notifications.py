"""
Tests for best-effort lifecycle notifications.
"""

from datetime import datetime, timezone

import httpx
import pytest
from sqlmodel import select

from predictvip.core.config import NotificationType
from predictvip.core.settings import settings
from predictvip.api.services.notifications import NotificationDispatcher, build_email_request
from predictvip.db.models import Notification, Subscription


def subscription(**fields):
    values = {
        "payment_email": "fan@example.com",
        "plan_type": "1_month",
        "status": "active",
        "expires_at": datetime(2026, 4, 9, 6, 0, tzinfo=timezone.utc),
    }
    values.update(fields)
    return Subscription(**values)


class TestEmailRequest:

    def test_activation_payload(self):
        payload = build_email_request(
            NotificationType.SUBSCRIPTION_ACTIVATED, "fan@example.com", "1_month",
            datetime(2026, 4, 9, 6, 0, tzinfo=timezone.utc),
        )

        assert payload == {
            "type": "subscription_activated",
            "recipient_email": "fan@example.com",
            "plan_type": "1_month",
            "expires_at": "2026-04-09T06:00:00+00:00",
        }

    def test_warning_payload_carries_days_remaining(self):
        payload = build_email_request(
            NotificationType.SUBSCRIPTION_EXPIRING, "fan@example.com", "1_year", None, days_remaining=3
        )

        assert payload["expires_at"] is None
        assert payload["days_remaining"] == 3


class TestDispatcher:

    @pytest.mark.asyncio
    async def test_email_is_posted(self, notifier, email_outbox):
        sent = await notifier.notify(NotificationType.SUBSCRIPTION_EXPIRED, subscription())

        assert sent is True
        assert email_outbox[0]["payload"]["type"] == "subscription_expired"
        assert email_outbox[0]["payload"]["recipient_email"] == "fan@example.com"

    @pytest.mark.asyncio
    async def test_explicit_recipient_wins(self, notifier, email_outbox):
        await notifier.notify(NotificationType.SUBSCRIPTION_EXPIRED, subscription(),
                              recipient_email="other@example.com")

        assert email_outbox[0]["payload"]["recipient_email"] == "other@example.com"

    @pytest.mark.asyncio
    async def test_skipped_without_collaborator_url(self, store, email_transport, email_outbox):
        dispatcher = NotificationDispatcher(store, transport=email_transport)

        assert settings.notification_email_url == ""
        assert await dispatcher.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription()) is False
        assert email_outbox == []

    @pytest.mark.asyncio
    async def test_server_error_returns_false(self, store, notifier):
        dispatcher = NotificationDispatcher(
            store, transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )

        assert await dispatcher.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription()) is False

    @pytest.mark.asyncio
    async def test_connection_error_returns_false(self, store, notifier):
        def unreachable(request):
            raise httpx.ConnectError("refused", request=request)

        dispatcher = NotificationDispatcher(store, transport=httpx.MockTransport(unreachable))

        assert await dispatcher.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription()) is False

    @pytest.mark.asyncio
    async def test_linked_user_gets_in_app_row(self, notifier, session, make_profile):
        user_id = make_profile("fan@example.com")

        await notifier.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription(user_id=user_id))

        rows = list(session.exec(select(Notification)).all())
        assert len(rows) == 1
        assert rows[0].user_id == user_id
        assert rows[0].title == "VIP Subscription Activated!"
        assert "April 09, 2026" in rows[0].message

    @pytest.mark.asyncio
    async def test_unlinked_subscription_gets_no_in_app_row(self, notifier, session):
        await notifier.notify(NotificationType.SUBSCRIPTION_EXPIRED, subscription())

        assert list(session.exec(select(Notification)).all()) == []
