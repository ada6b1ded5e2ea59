"""
Daily expiry sweep.

Sends the advance warning for subscriptions that expire on the UTC day
`expiry_warning_days` from now, then expires every active row whose expiry
has passed. Safe to run repeatedly and concurrently: the warning is claimed
with a compare-and-set on `expiry_warning_sent_for` before it is sent, and the
bulk expiry only reports rows that this run moved.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from predictvip.core.config import NotificationType
from predictvip.core.monitoring import record_sweep
from predictvip.core.settings import settings
from predictvip.api.services.notifications import NotificationDispatcher
from predictvip.api.services.state_machine import SubscriptionStateMachine
from predictvip.db.models import Subscription, to_utc
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    warnings_sent: int = 0
    expired_count: int = 0
    linked_count: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "expiring_notifications_sent": self.warnings_sent,
            "expired_subscriptions_processed": self.expired_count,
            "linked_subscriptions": self.linked_count,
        }


def warning_window(now: datetime, days_ahead: int):
    """First and last instant of the UTC calendar day `days_ahead` from now."""
    day = (now + timedelta(days=days_ahead)).replace(hour=0, minute=0, second=0, microsecond=0)
    return day, day + timedelta(days=1) - timedelta(microseconds=1)


class ExpirySweeper:
    """Periodic warning and expiry pass over active subscriptions."""

    def __init__(self, store: RecordStore, state_machine: SubscriptionStateMachine = None,
                 notifier: NotificationDispatcher = None):
        self.store = store
        self.state_machine = state_machine or SubscriptionStateMachine(store)
        self.notifier = notifier or NotificationDispatcher(store)

    async def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = to_utc(now) or self.state_machine.clock()
        result = SweepResult()
        logger.info("Expiry sweep started", now=now.isoformat())

        try:
            await self._send_warnings(now, result)
            await self._expire_overdue(now, result)
        except Exception as e:
            record_sweep("failed")
            logger.error("Expiry sweep failed", error=str(e))
            raise

        record_sweep("success", result.warnings_sent, result.expired_count)
        logger.info("Expiry sweep finished", warnings_sent=result.warnings_sent,
                    expired=result.expired_count, linked=result.linked_count)
        return result

    async def _send_warnings(self, now: datetime, result: SweepResult) -> None:
        days_ahead = settings.expiry_warning_days
        start, end = warning_window(now, days_ahead)

        for subscription in self.store.list_active_expiring_between(start, end):
            if subscription.expiry_warning_sent_for == subscription.expires_at:
                continue

            subscription = self._link(subscription, result)
            if not self.state_machine.mark_expiry_warning(subscription):
                continue

            await self.notifier.notify(
                NotificationType.SUBSCRIPTION_EXPIRING,
                subscription,
                recipient_email=self._recipient(subscription),
                days_remaining=days_ahead,
            )
            result.warnings_sent += 1

    async def _expire_overdue(self, now: datetime, result: SweepResult) -> None:
        expired = self.state_machine.expire_overdue(source="sweep", now=now)
        result.expired_count = len(expired)

        for subscription in expired:
            subscription = self._link(subscription, result)
            await self.notifier.notify(
                NotificationType.SUBSCRIPTION_EXPIRED,
                subscription,
                recipient_email=self._recipient(subscription),
            )

    def _link(self, subscription: Subscription, result: SweepResult) -> Subscription:
        if subscription.user_id:
            return subscription
        linked = self.state_machine.try_link(subscription)
        if linked.user_id:
            result.linked_count += 1
        return linked

    def _recipient(self, subscription: Subscription) -> Optional[str]:
        return subscription.payment_email or self.state_machine.identity.email_for_user(subscription.user_id)
