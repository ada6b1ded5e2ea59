"""
Application configuration constants and enums.
"""
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RegistrationStatus(str, Enum):
    """Whether the payer has an account linked to the subscription."""
    PENDING = "pending"
    REGISTERED = "registered"


class NotificationType(str, Enum):
    """Notification kinds emitted by the subscription lifecycle."""
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class PaystackEvent(str, Enum):
    """Paystack webhook events the ingestor acts on."""
    CHARGE_SUCCESS = "charge.success"
    SUBSCRIPTION_DISABLE = "subscription.disable"
    SUBSCRIPTION_NOT_RENEW = "subscription.not_renew"


ADMIN_ROLE = "admin"

# Gateway plan codes carry this prefix (e.g. PLN_1month)
GATEWAY_PLAN_PREFIX = "PLN_"

# Plan used when a charge carries no usable plan reference at all
DEFAULT_PAYMENT_PLAN = "1_month"

# Admin "+N months" extension
EXTENSION_DAYS_PER_MONTH = 30
MAX_EXTENSION_MONTHS = 12

SIGNATURE_HEADER = "x-paystack-signature"
CRON_SECRET_HEADER = "x-cron-secret"

# In-app notification copy
NOTIFICATION_TITLES = {
    NotificationType.SUBSCRIPTION_ACTIVATED: "VIP Subscription Activated!",
    NotificationType.SUBSCRIPTION_EXPIRING: "Subscription Expiring Soon!",
    NotificationType.SUBSCRIPTION_EXPIRED: "Subscription Expired",
}
