"""
Subscription state machine.

Owns `status` and `registration_status` on subscription rows. Every entry
point (payment webhook, admin actions, expiry sweep, subscription lookup)
changes a subscription through the functions here, so the transition guards
live in exactly one place.

    (none)    -> active      payment success, admin grant
    (none)    -> pending     admin pre-creation
    pending   -> active      admin activation, payment for a pending grant
    active    -> active      renewal payment, admin extension
    active    -> expired     sweep, admin force-expire
    *         -> cancelled   admin cancel, gateway cancellation (terminal)

Writes are compare-and-set on the row version. When a write loses a race the
row is re-read and the guard is evaluated again against the new state, so a
stale decision is never written over a concurrent one.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional

import structlog

from predictvip.core.config import (
    EXTENSION_DAYS_PER_MONTH,
    MAX_EXTENSION_MONTHS,
    RegistrationStatus,
    SubscriptionStatus,
)
from predictvip.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from predictvip.core.monitoring import increment_optimistic_conflict, increment_subscription_transition
from predictvip.api.services import plan_catalog
from predictvip.api.services.identity import IdentityResolver, normalize_email
from predictvip.db.models import Subscription, utcnow
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
PENDING = SubscriptionStatus.PENDING.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELLED = SubscriptionStatus.CANCELLED.value


class SubscriptionStateMachine:
    """Guarded transitions over the record store."""

    MAX_ATTEMPTS = 3

    def __init__(self, store: RecordStore, identity: IdentityResolver = None,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.identity = identity or IdentityResolver(store)
        self.clock = clock or utcnow

    # Creation

    def create_active(self, email: str, plan_type: str, source: str,
                      expires_at: Optional[datetime] = None,
                      payment_reference: Optional[str] = None) -> Subscription:
        """Insert a new active subscription, linked if the payer is registered."""
        now = self.clock()
        plan_type = plan_catalog.normalize_plan_type(plan_type)
        email = normalize_email(email)

        subscription = Subscription(
            payment_email=email,
            plan_type=plan_type,
            status=ACTIVE,
            started_at=now,
            expires_at=expires_at or now + timedelta(days=plan_catalog.duration_days(plan_type)),
            payment_reference=payment_reference,
            **self._link_values(email, None),
        )
        created = self.store.insert_subscription(subscription)
        increment_subscription_transition("none->active", source)
        logger.info("Subscription created", subscription_id=created.id, email=email,
                    plan_type=plan_type, status=ACTIVE, user_id=created.user_id, source=source)
        return created

    def create_pending(self, email: str, plan_type: str, source: str) -> Subscription:
        """Insert a grant that waits for admin activation."""
        plan_type = plan_catalog.normalize_plan_type(plan_type)
        email = normalize_email(email)

        subscription = Subscription(
            payment_email=email,
            plan_type=plan_type,
            status=PENDING,
            **self._link_values(email, None),
        )
        created = self.store.insert_subscription(subscription)
        increment_subscription_transition("none->pending", source)
        logger.info("Pending subscription created", subscription_id=created.id, email=email,
                    plan_type=plan_type, source=source)
        return created

    # Transitions on existing rows

    def activate(self, subscription_id: str, source: str) -> Subscription:
        """
        pending -> active.

        Raises:
            ConflictError: already active
            InvalidTransitionError: cancelled, or expired with no time left
        """
        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            if current.status == ACTIVE:
                raise ConflictError("Subscription is already active",
                                    details={"subscription_id": current.id})
            if current.status == CANCELLED:
                raise InvalidTransitionError("Cannot activate a cancelled subscription", current.status)
            if current.status == EXPIRED and (current.expires_at is None or current.expires_at <= now):
                raise InvalidTransitionError("Cannot activate an expired subscription", current.status)
            return self._activation_values(current, now)

        return self._transition(subscription_id, "activate", source, decide)

    def renew(self, subscription_id: str, source: str,
              payment_reference: Optional[str] = None) -> Subscription:
        """
        active -> active with one more plan period added to the current expiry.

        Raises:
            InvalidTransitionError: the row is no longer active
        """
        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            if current.status != ACTIVE:
                raise InvalidTransitionError("Only active subscriptions can be renewed", current.status)
            base = current.expires_at if current.expires_at and current.expires_at > now else now
            values = {
                "expires_at": base + timedelta(days=plan_catalog.duration_days(current.plan_type)),
                **self._link_values(current.payment_email, current.user_id),
            }
            if payment_reference:
                values["payment_reference"] = payment_reference
            return values

        return self._transition(subscription_id, "renew", source, decide)

    def extend(self, subscription_id: str, months: int, source: str) -> Subscription:
        """
        Add months to the current expiry; anchored at now once it has passed.

        Raises:
            InvalidTransitionError: cancelled
        """
        months = max(1, min(MAX_EXTENSION_MONTHS, int(months or 1)))

        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            if current.status == CANCELLED:
                raise InvalidTransitionError("Cannot extend a cancelled subscription", current.status)

            still_running = (
                current.status == ACTIVE
                and current.expires_at is not None
                and current.expires_at > now
            )
            base = current.expires_at if still_running else now
            values = {
                "status": ACTIVE,
                "expires_at": base + timedelta(days=months * EXTENSION_DAYS_PER_MONTH),
                **self._link_values(current.payment_email, current.user_id),
            }
            if not still_running:
                values["started_at"] = now
            return values

        return self._transition(subscription_id, "extend", source, decide)

    def expire(self, subscription_id: str, source: str) -> Subscription:
        """
        active -> expired immediately (admin force-expire).

        Raises:
            ConflictError: already expired
            InvalidTransitionError: not active
        """
        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            if current.status == EXPIRED:
                raise ConflictError("Subscription is already expired",
                                    details={"subscription_id": current.id})
            if current.status != ACTIVE:
                raise InvalidTransitionError("Only active subscriptions can be expired", current.status)
            return {
                "status": EXPIRED,
                "expires_at": now,
                **self._link_values(current.payment_email, current.user_id),
            }

        return self._transition(subscription_id, "expire", source, decide)

    def cancel(self, subscription_id: str, source: str) -> Subscription:
        """
        any -> cancelled.

        Raises:
            ConflictError: already cancelled
        """
        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            if current.status == CANCELLED:
                raise ConflictError("Subscription is already cancelled",
                                    details={"subscription_id": current.id})
            return {"status": CANCELLED, **self._link_values(current.payment_email, current.user_id)}

        return self._transition(subscription_id, "cancel", source, decide)

    def cancel_active_for_email(self, email: str, source: str) -> List[Subscription]:
        """Cancel every active subscription paid with this e-mail."""
        cancelled = []
        for candidate in self.store.find_active_by_email(normalize_email(email)):
            try:
                cancelled.append(self._transition(
                    candidate.id, "cancel", source, self._cancel_if_active, first=candidate
                ))
            except (InvalidTransitionError, NotFoundError) as e:
                logger.info("Skipped cancellation, row changed concurrently",
                            subscription_id=candidate.id, reason=str(e))
        return cancelled

    def link(self, subscription_id: str, user_id: str, source: str) -> Subscription:
        """Attach a subscription to a chosen user; status is left untouched."""
        def decide(current: Subscription, now: datetime) -> Dict[str, Any]:
            return {"user_id": user_id, "registration_status": RegistrationStatus.REGISTERED.value}

        return self._transition(subscription_id, "link", source, decide)

    def try_link(self, subscription: Subscription, user_id: Optional[str] = None) -> Subscription:
        """
        Opportunistically link an unlinked row.

        Uses `user_id` when the caller already knows who owns the e-mail,
        otherwise asks the identity resolver. Losing a race is not an error:
        the current row is returned as-is.
        """
        if subscription.user_id:
            return subscription

        user_id = user_id or self.identity.find_user_id_by_email(subscription.payment_email)
        if not user_id:
            return subscription

        updated = self.store.conditional_update(subscription.id, subscription.version, {
            "user_id": user_id,
            "registration_status": RegistrationStatus.REGISTERED.value,
        })
        if updated is None:
            increment_optimistic_conflict("link")
            return self.store.get_subscription(subscription.id) or subscription

        logger.info("Subscription linked to registered user",
                    subscription_id=subscription.id, user_id=user_id)
        return updated

    # Sweep support

    def expire_overdue(self, source: str = "sweep", now: Optional[datetime] = None) -> List[Subscription]:
        """Bulk active -> expired for rows past their expiry."""
        expired = self.store.expire_overdue(now or self.clock())
        for _ in expired:
            increment_subscription_transition("active->expired", source)
        return expired

    def mark_expiry_warning(self, subscription: Subscription) -> bool:
        """
        Claim the advance warning for this row's current expiry date.

        Returns True for exactly one caller per expiry date, even when
        several sweeps run at once.
        """
        if subscription.expires_at is None:
            return False
        if subscription.expiry_warning_sent_for == subscription.expires_at:
            return False

        updated = self.store.conditional_update(subscription.id, subscription.version, {
            "expiry_warning_sent_for": subscription.expires_at,
        })
        if updated is None:
            increment_optimistic_conflict("expiry_warning")
            return False
        return True

    # Internals

    def _cancel_if_active(self, current: Subscription, now: datetime) -> Dict[str, Any]:
        if current.status != ACTIVE:
            raise InvalidTransitionError("Subscription is no longer active", current.status)
        return {"status": CANCELLED, **self._link_values(current.payment_email, current.user_id)}

    def _activation_values(self, current: Subscription, now: datetime) -> Dict[str, Any]:
        return {
            "status": ACTIVE,
            "started_at": now,
            "expires_at": now + timedelta(days=plan_catalog.duration_days(current.plan_type)),
            **self._link_values(current.payment_email, current.user_id),
        }

    def _link_values(self, email: Optional[str], user_id: Optional[str]) -> Dict[str, Any]:
        """user_id/registration_status pair; an existing link is kept."""
        if not user_id:
            user_id = self.identity.find_user_id_by_email(email)
        return {
            "user_id": user_id,
            "registration_status": (
                RegistrationStatus.REGISTERED.value if user_id else RegistrationStatus.PENDING.value
            ),
        }

    def _transition(self, subscription_id: str, operation: str, source: str,
                    decide: Callable[[Subscription, datetime], Dict[str, Any]],
                    first: Optional[Subscription] = None) -> Subscription:
        current = first
        for attempt in range(self.MAX_ATTEMPTS):
            if current is None:
                current = self.store.get_subscription(subscription_id)
            if current is None:
                raise NotFoundError("Subscription", subscription_id)

            now = self.clock()
            values = decide(current, now)
            # The store may hand back the same instance, refreshed
            from_status = current.status
            updated = self.store.conditional_update(current.id, current.version, values)
            if updated is not None:
                if updated.status != from_status:
                    increment_subscription_transition(f"{from_status}->{updated.status}", source)
                logger.info("Subscription transition applied", subscription_id=updated.id,
                            operation=operation, from_status=from_status,
                            to_status=updated.status, source=source)
                return updated

            increment_optimistic_conflict(operation)
            logger.warning("Subscription changed during transition, re-evaluating",
                           subscription_id=subscription_id, operation=operation, attempt=attempt + 1)
            current = None

        raise ConflictError("Subscription was modified concurrently, retry the request",
                            details={"subscription_id": subscription_id, "operation": operation})
