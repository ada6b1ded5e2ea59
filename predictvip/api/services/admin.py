"""
Admin-initiated subscription actions.

Every operation takes the calling admin explicitly. The caller is resolved
once at the request boundary and is authorized here before any row is
touched.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from predictvip.core.config import ADMIN_ROLE, NotificationType, SubscriptionStatus
from predictvip.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    PredictVipException,
    ValidationError,
)
from predictvip.core.settings import settings
from predictvip.api.services.identity import normalize_email
from predictvip.api.services.notifications import NotificationDispatcher
from predictvip.api.services.state_machine import SubscriptionStateMachine
from predictvip.db.models import Subscription, to_utc
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)

SOURCE = "admin"


@dataclass(frozen=True)
class AdminCaller:
    """Authenticated identity of the operator performing an admin action."""
    user_id: str
    email: Optional[str] = None


@dataclass
class BulkItemResult:
    subscription_id: str
    success: bool
    subscription: Optional[Subscription] = None
    error_type: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        item = {"subscription_id": self.subscription_id, "success": self.success}
        if self.success:
            item["subscription"] = self.subscription.to_dict()
        else:
            item["error_type"] = self.error_type
            item["error"] = self.error
        return item


@dataclass
class BulkActivationResult:
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.results if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if not item.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [item.to_dict() for item in self.results],
        }


class AdminActivationService:
    """Activation, manual grants, linking and lifecycle overrides for admins."""

    def __init__(self, store: RecordStore, state_machine: SubscriptionStateMachine = None,
                 notifier: NotificationDispatcher = None):
        self.store = store
        self.state_machine = state_machine or SubscriptionStateMachine(store)
        self.notifier = notifier or NotificationDispatcher(store)

    def is_authorized(self, caller: Optional[AdminCaller]) -> bool:
        """Admin role holder, or the configured super-operator e-mail."""
        if caller is None or not caller.user_id:
            return False
        if settings.super_operator_email and normalize_email(caller.email) == settings.super_operator_email:
            return True
        return self.store.has_role(caller.user_id, ADMIN_ROLE)

    def authorize(self, caller: Optional[AdminCaller]) -> None:
        if not self.is_authorized(caller):
            logger.warning("Admin action denied", user_id=getattr(caller, "user_id", None))
            raise AuthorizationError("Admin access required")

    async def activate(self, caller: AdminCaller, subscription_id: str) -> Subscription:
        """
        Activate a pending subscription.

        Raises:
            NotFoundError: unknown id
            ConflictError: already active
            InvalidTransitionError: cancelled or definitively expired
        """
        self.authorize(caller)
        subscription = self._activate_one(caller, subscription_id)
        await self.notifier.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription)
        return subscription

    async def bulk_activate(self, caller: AdminCaller, subscription_ids: List[str]) -> BulkActivationResult:
        """Activate each id independently; item failures are reported, not raised."""
        self.authorize(caller)

        # Preserve order, drop repeats
        unique_ids = list(dict.fromkeys(sid for sid in subscription_ids or [] if sid))
        if not unique_ids:
            raise ValidationError("subscription_ids must contain at least one id")
        if len(unique_ids) > settings.max_bulk_activation:
            raise ValidationError(
                f"Cannot activate more than {settings.max_bulk_activation} subscriptions at once",
                details={"requested": len(unique_ids)},
            )

        result = BulkActivationResult()
        for subscription_id in unique_ids:
            try:
                subscription = self._activate_one(caller, subscription_id)
            except PredictVipException as e:
                result.results.append(BulkItemResult(
                    subscription_id=subscription_id,
                    success=False,
                    error_type=e.__class__.__name__,
                    error=e.message,
                ))
                continue

            result.results.append(BulkItemResult(
                subscription_id=subscription_id, success=True, subscription=subscription
            ))
            await self.notifier.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription)

        logger.info("Bulk activation finished", admin_id=caller.user_id,
                    succeeded=result.succeeded, failed=result.failed)
        return result

    async def create(self, caller: AdminCaller, email: str, plan_type: str,
                     expires_at: Optional[datetime] = None,
                     status: str = SubscriptionStatus.ACTIVE.value) -> Subscription:
        """
        Grant a plan to an e-mail with no payment behind it.

        Raises:
            ValidationError: bad e-mail, status or expiry
        """
        self.authorize(caller)

        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        if not plan_type or not str(plan_type).strip():
            raise ValidationError("plan_type is required")

        if status == SubscriptionStatus.PENDING.value:
            if expires_at is not None:
                raise ValidationError("expires_at is computed on activation for pending subscriptions")
            return self.state_machine.create_pending(email, plan_type, source=SOURCE)
        if status != SubscriptionStatus.ACTIVE.value:
            raise ValidationError("status must be 'active' or 'pending'", details={"status": status})

        if expires_at is not None:
            expires_at = to_utc(expires_at)
            if expires_at <= self.state_machine.clock():
                raise ValidationError("expires_at must be in the future")

        subscription = self.state_machine.create_active(email, plan_type, source=SOURCE,
                                                        expires_at=expires_at)
        logger.info("Manual subscription granted", admin_id=caller.user_id,
                    subscription_id=subscription.id, email=email)
        await self.notifier.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription)
        return subscription

    def link(self, caller: AdminCaller, subscription_id: str, user_id: str) -> Subscription:
        """
        Attach a subscription to a registered user chosen by the admin.

        Raises:
            NotFoundError: unknown subscription or user
        """
        self.authorize(caller)
        if not user_id or not self.state_machine.identity.user_exists(user_id):
            raise NotFoundError("User", user_id or "")
        subscription = self.state_machine.link(subscription_id, user_id, source=SOURCE)
        logger.info("Subscription manually linked", admin_id=caller.user_id,
                    subscription_id=subscription_id, user_id=user_id)
        return subscription

    def extend(self, caller: AdminCaller, subscription_id: str, months: int = 1) -> Subscription:
        self.authorize(caller)
        return self.state_machine.extend(subscription_id, months, source=SOURCE)

    def expire(self, caller: AdminCaller, subscription_id: str) -> Subscription:
        self.authorize(caller)
        return self.state_machine.expire(subscription_id, source=SOURCE)

    def cancel(self, caller: AdminCaller, subscription_id: str) -> Subscription:
        self.authorize(caller)
        return self.state_machine.cancel(subscription_id, source=SOURCE)

    def _activate_one(self, caller: AdminCaller, subscription_id: str) -> Subscription:
        subscription = self.state_machine.activate(subscription_id, source=SOURCE)
        logger.info("Subscription activated by admin", admin_id=caller.user_id,
                    subscription_id=subscription_id, expires_at=subscription.expires_at,
                    registration_status=subscription.registration_status)
        return subscription
