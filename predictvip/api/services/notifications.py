"""
Outbound notifications for subscription lifecycle events.

Two channels: an in-app row in `notifications` for linked users, and an
e-mail request posted to the delivery collaborator. Both are best-effort.
A failure is logged and counted, never raised, because the lifecycle write
that triggered it has already been committed.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import structlog

from predictvip.core.config import NOTIFICATION_TITLES, NotificationType
from predictvip.core.monitoring import increment_notification
from predictvip.core.settings import settings
from predictvip.api.services.plan_catalog import label_of
from predictvip.db.models import Subscription
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)


def _in_app_message(notification_type: NotificationType, subscription: Subscription,
                    days_remaining: Optional[int]) -> str:
    if notification_type == NotificationType.SUBSCRIPTION_ACTIVATED:
        until = subscription.expires_at.strftime("%B %d, %Y") if subscription.expires_at else "further notice"
        return f"Your {label_of(subscription.plan_type)} VIP subscription is now active until {until}."
    if notification_type == NotificationType.SUBSCRIPTION_EXPIRING:
        return (
            f"Your VIP subscription will expire in {days_remaining} days. "
            "Renew now to continue enjoying premium predictions."
        )
    return "Your VIP subscription has expired. Renew to regain access to premium predictions."


def build_email_request(notification_type: NotificationType, recipient_email: str,
                        plan_type: str, expires_at: Optional[datetime],
                        days_remaining: Optional[int] = None) -> Dict[str, Any]:
    """Request body understood by the e-mail delivery collaborator."""
    payload = {
        "type": notification_type.value,
        "recipient_email": recipient_email,
        "plan_type": plan_type,
        "expires_at": expires_at.isoformat() if expires_at else None,
    }
    if days_remaining is not None:
        payload["days_remaining"] = days_remaining
    return payload


class NotificationDispatcher:
    """Emits in-app and e-mail notifications for a subscription."""

    def __init__(self, store: RecordStore, transport: httpx.AsyncBaseTransport = None):
        """
        Args:
            store: Record store used for in-app notification rows
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.store = store
        self.transport = transport

    async def notify(
        self,
        notification_type: NotificationType,
        subscription: Subscription,
        recipient_email: Optional[str] = None,
        days_remaining: Optional[int] = None,
    ) -> bool:
        """
        Send both channels for one event.

        Returns:
            True if the e-mail request was accepted by the collaborator
        """
        if subscription.user_id:
            self._write_in_app(notification_type, subscription, days_remaining)

        email = recipient_email or subscription.payment_email
        if not email:
            logger.info("No recipient for notification", subscription_id=subscription.id,
                        type=notification_type.value)
            return False

        return await self.send_email(build_email_request(
            notification_type,
            email,
            subscription.plan_type,
            subscription.expires_at,
            days_remaining,
        ))

    def _write_in_app(self, notification_type: NotificationType, subscription: Subscription,
                      days_remaining: Optional[int]) -> None:
        try:
            self.store.insert_notification(
                user_id=subscription.user_id,
                type=notification_type.value,
                title=NOTIFICATION_TITLES[notification_type],
                message=_in_app_message(notification_type, subscription, days_remaining),
            )
            increment_notification("in_app", notification_type.value, "sent")
        except Exception as e:
            increment_notification("in_app", notification_type.value, "failed")
            logger.error("Failed to write in-app notification",
                         subscription_id=subscription.id, user_id=subscription.user_id, error=str(e))

    async def send_email(self, payload: Dict[str, Any]) -> bool:
        """POST one e-mail request; never raises."""
        if not settings.notification_email_url:
            increment_notification("email", payload["type"], "skipped")
            logger.info("Notification email URL not configured, skipping",
                        type=payload["type"], recipient=payload["recipient_email"])
            return False

        headers = {"Content-Type": "application/json"}
        if settings.supabase_service_role_key:
            headers["Authorization"] = f"Bearer {settings.supabase_service_role_key}"

        try:
            async with httpx.AsyncClient(
                timeout=settings.notification_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(settings.notification_email_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            increment_notification("email", payload["type"], "failed")
            logger.error("Failed to send subscription email",
                         type=payload["type"], recipient=payload["recipient_email"], error=str(e))
            return False

        increment_notification("email", payload["type"], "sent")
        logger.info("Subscription email sent", type=payload["type"], recipient=payload["recipient_email"])
        return True
