# Database models
from .subscription import Subscription, PaymentEvent, utcnow, to_utc
from .profile import Profile, UserRole, Notification

__all__ = [
    # Subscription models
    "Subscription", "PaymentEvent",
    # Account models
    "Profile", "UserRole", "Notification",
    # Time helpers
    "utcnow", "to_utc",
]
