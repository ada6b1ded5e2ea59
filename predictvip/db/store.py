"""
Record store used by the subscription engine.

The engine never holds locks. Every write to a subscription is a
compare-and-set on the row's `version`: the caller reads a row, decides, and
writes only if nobody else wrote in between. `conditional_update` returns
None when the row moved underneath the caller.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from predictvip.core.config import ADMIN_ROLE, SubscriptionStatus
from predictvip.core.exceptions import PersistenceError
from predictvip.core.settings import settings
from predictvip.db.models import (
    Notification,
    PaymentEvent,
    Profile,
    Subscription,
    UserRole,
    utcnow,
)

logger = structlog.get_logger(__name__)


class RecordStore(ABC):
    """Operations the engine needs from the subscriptions/profiles schema."""

    # Subscriptions
    @abstractmethod
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    @abstractmethod
    def conditional_update(
        self,
        subscription_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> Optional[Subscription]:
        """Apply `values` only if the row still has `expected_version`."""

    @abstractmethod
    def find_live_subscription(self, email: str, plan_type: str, now: datetime) -> Optional[Subscription]:
        ...

    @abstractmethod
    def find_pending_subscription(self, email: str, plan_type: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def find_active_by_email(self, email: str) -> List[Subscription]:
        ...

    @abstractmethod
    def find_live_for_user(self, user_id: str, now: datetime) -> Optional[Subscription]:
        ...

    @abstractmethod
    def find_live_for_email(self, email: str, now: datetime) -> Optional[Subscription]:
        ...

    @abstractmethod
    def list_active_expiring_between(self, start: datetime, end: datetime) -> List[Subscription]:
        ...

    @abstractmethod
    def expire_overdue(self, now: datetime) -> List[Subscription]:
        """Move every active row with expires_at < now to expired.

        Returns only the rows this call transitioned.
        """

    # Payment events
    @abstractmethod
    def payment_reference_seen(self, reference: str) -> bool:
        ...

    @abstractmethod
    def record_payment_event(self, reference: str, event: str, email: str,
                             subscription_id: Optional[str]) -> None:
        ...

    # Profiles and roles
    @abstractmethod
    def find_profile_id_by_email(self, email: str) -> Optional[str]:
        ...

    @abstractmethod
    def profile_exists(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def email_for_user(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def has_role(self, user_id: str, role: str = ADMIN_ROLE) -> bool:
        ...

    # In-app notifications
    @abstractmethod
    def insert_notification(self, user_id: str, type: str, title: str, message: str) -> None:
        ...


class SQLRecordStore(RecordStore):
    """Record store backed by a SQLModel session."""

    def __init__(self, session: Session = None):
        """
        Args:
            session: Database session (optional, will create if not provided)
        """
        self.session = session
        self._should_close_session = session is None

        if self.session is None:
            from predictvip.db.session import engine
            self.session = Session(engine)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self._should_close_session and self.session:
            self.session.close()

    def _commit(self, action: str):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Record store commit failed", action=action, error=str(e))
            raise PersistenceError(f"Failed to {action}")

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.session.get(Subscription, subscription_id, populate_existing=True)

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        self._commit("create subscription")
        self.session.refresh(subscription)
        return subscription

    def conditional_update(self, subscription_id, expected_version, values):
        values = dict(values)
        values["version"] = expected_version + 1
        values.setdefault("updated_at", utcnow())

        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .where(Subscription.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(statement)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Conditional update failed", subscription_id=subscription_id, error=str(e))
            raise PersistenceError("Failed to update subscription")
        self._commit("update subscription")

        if result.rowcount != 1:
            return None
        return self.get_subscription(subscription_id)

    def find_live_subscription(self, email, plan_type, now):
        statement = select(Subscription).where(
            Subscription.payment_email == email.lower(),
            Subscription.plan_type == plan_type,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
        ).order_by(Subscription.expires_at.desc())
        return self.session.exec(statement).first()

    def find_pending_subscription(self, email, plan_type):
        statement = select(Subscription).where(
            Subscription.payment_email == email.lower(),
            Subscription.plan_type == plan_type,
            Subscription.status == SubscriptionStatus.PENDING.value,
        ).order_by(Subscription.created_at)
        return self.session.exec(statement).first()

    def find_active_by_email(self, email):
        statement = select(Subscription).where(
            Subscription.payment_email == email.lower(),
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        )
        return list(self.session.exec(statement).all())

    def find_live_for_user(self, user_id, now):
        statement = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
        ).order_by(Subscription.expires_at.desc())
        return self.session.exec(statement).first()

    def find_live_for_email(self, email, now):
        statement = select(Subscription).where(
            Subscription.payment_email == email.lower(),
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at > now,
        ).order_by(Subscription.expires_at.desc())
        return self.session.exec(statement).first()

    def list_active_expiring_between(self, start, end):
        statement = select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expires_at >= start,
            Subscription.expires_at <= end,
        )
        return list(self.session.exec(statement).all())

    def expire_overdue(self, now):
        statement = (
            update(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .where(Subscription.expires_at < now)
            .values(
                status=SubscriptionStatus.EXPIRED.value,
                version=Subscription.version + 1,
                updated_at=now,
            )
            .returning(Subscription.id)
            .execution_options(synchronize_session=False)
        )
        try:
            expired_ids = [row[0] for row in self.session.execute(statement).all()]
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Bulk expiry failed", error=str(e))
            raise PersistenceError("Failed to expire subscriptions")
        self._commit("expire subscriptions")

        if not expired_ids:
            return []
        rows = self.session.exec(
            select(Subscription)
            .where(Subscription.id.in_(expired_ids))
            .execution_options(populate_existing=True)
        ).all()
        return list(rows)

    def payment_reference_seen(self, reference):
        statement = select(PaymentEvent.id).where(PaymentEvent.reference == reference)
        return self.session.exec(statement).first() is not None

    def record_payment_event(self, reference, event, email, subscription_id):
        self.session.add(PaymentEvent(
            reference=reference,
            event=event,
            payment_email=email,
            subscription_id=subscription_id,
        ))
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same reference got there first
            self.session.rollback()
            logger.info("Payment reference already recorded", reference=reference)

    def find_profile_id_by_email(self, email):
        statement = select(Profile.id).where(func.lower(Profile.email) == email.lower())
        return self.session.exec(statement).first()

    def profile_exists(self, user_id):
        return self.session.get(Profile, user_id) is not None

    def email_for_user(self, user_id):
        profile = self.session.get(Profile, user_id)
        return profile.email if profile else None

    def has_role(self, user_id, role=ADMIN_ROLE):
        statement = select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
        return self.session.exec(statement).first() is not None

    def insert_notification(self, user_id, type, title, message):
        self.session.add(Notification(user_id=user_id, type=type, title=title, message=message))
        self._commit("create notification")


@contextmanager
def open_record_store():
    """Configured record store for code running outside a request."""
    if settings.record_store == "supabase":
        from predictvip.db.supabase_store import SupabaseRecordStore
        yield SupabaseRecordStore()
        return

    with SQLRecordStore() as store:
        yield store


def get_record_store():
    """FastAPI dependency yielding the configured record store."""
    with open_record_store() as store:
        yield store
