"""
Identity resolution: payment e-mail -> registered profile id.
"""

from typing import Optional

import structlog

from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class IdentityResolver:
    """Read-only lookups against the profiles table."""

    def __init__(self, store: RecordStore):
        self.store = store

    def find_user_id_by_email(self, email: Optional[str]) -> Optional[str]:
        """
        Find a registered user by e-mail, case-insensitively.

        A missing account is the normal pre-registration state, so this
        returns None instead of raising.
        """
        email = normalize_email(email)
        if not email:
            return None

        user_id = self.store.find_profile_id_by_email(email)
        logger.debug("Resolved payment email", email=email, user_id=user_id)
        return user_id

    def user_exists(self, user_id: str) -> bool:
        return bool(user_id) and self.store.profile_exists(user_id)

    def email_for_user(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        return self.store.email_for_user(user_id)
