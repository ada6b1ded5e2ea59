"""
Subscription lookup for signed-in users.
"""

from typing import Optional

import structlog

from predictvip.api.services.identity import normalize_email
from predictvip.api.services.state_machine import SubscriptionStateMachine
from predictvip.db.models import Subscription
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)


class SubscriptionService:
    """Read side of the subscription lifecycle."""

    def __init__(self, store: RecordStore, state_machine: SubscriptionStateMachine = None):
        self.store = store
        self.state_machine = state_machine or SubscriptionStateMachine(store)

    def current_for_user(self, user_id: str, email: Optional[str] = None) -> Optional[Subscription]:
        """
        Live subscription for a user.

        Looks up by user_id first. A payment made before the user registered
        is found by e-mail and linked to the caller on the way out.
        """
        now = self.state_machine.clock()
        subscription = self.store.find_live_for_user(user_id, now)
        if subscription is not None:
            return subscription

        email = normalize_email(email)
        if not email:
            return None

        subscription = self.store.find_live_for_email(email, now)
        if subscription is None:
            return None
        if subscription.user_id:
            # Owned by another account
            return None

        logger.info("Linking subscription found by email", subscription_id=subscription.id, user_id=user_id)
        return self.state_machine.try_link(subscription, user_id=user_id)
