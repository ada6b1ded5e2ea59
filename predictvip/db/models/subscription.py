"""
Subscription model for VIP access and payment reconciliation.

A subscription is created from a gateway payment or an admin grant and keyed
by the payer's e-mail. It may exist before the payer registers; `user_id` is
filled in once a profile with a matching e-mail is found.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field
import uuid

from predictvip.core.config import SubscriptionStatus, RegistrationStatus


def utcnow() -> datetime:
    """Current time as an aware UTC datetime, the form every table stores."""
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive input is taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subscription(SQLModel, table=True):
    """
    VIP subscription record.

    `status` and `registration_status` are only ever written through the
    state machine; `version` is bumped on every write and used as the
    compare-and-set token for guarded transitions.
    """
    __tablename__ = "subscriptions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique subscription identifier"
    )

    user_id: Optional[str] = Field(
        default=None,
        index=True,
        description="Linked profile id, null until the payer registers"
    )

    payment_email: str = Field(
        index=True,
        description="Lower-cased e-mail supplied at payment time"
    )

    plan_type: str = Field(
        index=True,
        description="Normalized plan identifier (2_weeks, 1_month, 6_months, 1_year)"
    )

    status: str = Field(
        default=SubscriptionStatus.PENDING.value,
        index=True,
        description="pending, active, expired or cancelled"
    )

    registration_status: str = Field(
        default=RegistrationStatus.PENDING.value,
        description="pending until user_id is populated, then registered"
    )

    started_at: Optional[datetime] = Field(default=None)

    expires_at: Optional[datetime] = Field(default=None, index=True)

    payment_reference: Optional[str] = Field(
        default=None,
        index=True,
        description="Gateway transaction reference of the last payment applied"
    )

    expiry_warning_sent_for: Optional[datetime] = Field(
        default=None,
        description="expires_at value the advance warning was sent for"
    )

    version: int = Field(default=0, description="Optimistic concurrency token")

    created_at: datetime = Field(default_factory=utcnow)

    updated_at: datetime = Field(default_factory=utcnow)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Active and not yet past its expiry."""
        if self.status != SubscriptionStatus.ACTIVE.value:
            return False
        if self.expires_at is None:
            return False
        return (now or utcnow()) < self.expires_at

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days left before expiry, 0 when not live."""
        now = now or utcnow()
        if not self.is_live(now):
            return 0
        return max(0, (self.expires_at - now).days)

    def to_dict(self) -> dict:
        """Convert subscription to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payment_email": self.payment_email,
            "plan_type": self.plan_type,
            "status": self.status,
            "registration_status": self.registration_status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_live": self.is_live(),
            "days_remaining": self.days_remaining(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PaymentEvent(SQLModel, table=True):
    """Gateway transaction references that have already been applied."""
    __tablename__ = "payment_events"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    reference: str = Field(unique=True, index=True)
    event: str
    payment_email: str = Field(index=True)
    subscription_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)

