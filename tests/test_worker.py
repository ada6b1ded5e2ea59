"""
Tests for the scheduled expiry sweep task.
"""

from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch

from predictvip.core.settings import settings
from predictvip.db.models import utcnow
from predictvip.worker import tasks


class TestExpiryTask:

    def test_beat_schedule_runs_daily_at_configured_hour(self):
        entry = tasks.celery_app.conf.beat_schedule["check-subscription-expiry"]

        assert entry["task"] == "predictvip.worker.tasks.check_subscription_expiry"
        assert entry["schedule"].hour == {settings.sweep_hour_utc}
        assert entry["schedule"].minute == {0}

    def test_task_runs_sweep_against_configured_store(self, store, make_subscription):
        overdue = make_subscription(status="active", expires_at=utcnow() - timedelta(minutes=5))

        @contextmanager
        def fake_open_record_store():
            yield store

        with patch.object(tasks, "open_record_store", fake_open_record_store):
            response = tasks.check_subscription_expiry()

        assert response["success"] is True
        assert response["expired_subscriptions_processed"] == 1
        assert store.get_subscription(overdue.id).status == "expired"
