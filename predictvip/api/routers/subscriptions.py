"""
Subscription router for the signed-in user.
"""
from typing import Any, Dict
from fastapi import APIRouter, Depends
import structlog

from predictvip.core.security import get_current_user, SupabaseUser
from predictvip.api.services.subscriptions import SubscriptionService
from predictvip.db.store import RecordStore, get_record_store

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/me")
async def get_my_subscription(
    current_user: SupabaseUser = Depends(get_current_user),
    store: RecordStore = Depends(get_record_store)
) -> Dict[str, Any]:
    """Current live subscription, linking a pre-registration payment if found."""
    subscription = SubscriptionService(store).current_for_user(current_user.id, current_user.email)
    return {
        "has_active_subscription": subscription is not None,
        "subscription": subscription.to_dict() if subscription else None,
    }
