"""
Admin router for subscription activation and lifecycle overrides.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
import structlog

from predictvip.core.config import SubscriptionStatus
from predictvip.core.security import get_admin_caller
from predictvip.api.services.admin import AdminActivationService, AdminCaller
from predictvip.db.store import RecordStore, get_record_store

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/subscriptions", tags=["admin"])


class SubscriptionIdRequest(BaseModel):
    subscription_id: str


class BulkActivateRequest(BaseModel):
    subscription_ids: List[str]


class CreateSubscriptionRequest(BaseModel):
    email: str
    plan_type: str
    expires_at: Optional[datetime] = None
    status: str = SubscriptionStatus.ACTIVE.value


class LinkRequest(BaseModel):
    subscription_id: str
    user_id: str


class ExtendRequest(BaseModel):
    subscription_id: str
    months: int = Field(default=1, description="Clamped to 1..12")


def get_admin_service(store: RecordStore = Depends(get_record_store)) -> AdminActivationService:
    return AdminActivationService(store)


@router.post("/activate")
async def activate_subscription(
    request: SubscriptionIdRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    """Activate a pending subscription."""
    subscription = await service.activate(caller, request.subscription_id)
    return {"success": True, "subscription": subscription.to_dict()}


@router.post("/bulk-activate")
async def bulk_activate_subscriptions(
    request: BulkActivateRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    """Activate many subscriptions; each item reports its own outcome."""
    result = await service.bulk_activate(caller, request.subscription_ids)
    return result.to_dict()


@router.post("")
async def create_subscription(
    request: CreateSubscriptionRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    """Grant a subscription to an e-mail without a payment."""
    subscription = await service.create(
        caller,
        email=request.email,
        plan_type=request.plan_type,
        expires_at=request.expires_at,
        status=request.status,
    )
    return {"success": True, "subscription": subscription.to_dict()}


@router.post("/link")
async def link_subscription(
    request: LinkRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    """Attach a subscription to a registered user."""
    subscription = service.link(caller, request.subscription_id, request.user_id)
    return {"success": True, "subscription": subscription.to_dict()}


@router.post("/extend")
async def extend_subscription(
    request: ExtendRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    subscription = service.extend(caller, request.subscription_id, request.months)
    return {"success": True, "subscription": subscription.to_dict()}


@router.post("/expire")
async def expire_subscription(
    request: SubscriptionIdRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    subscription = service.expire(caller, request.subscription_id)
    return {"success": True, "subscription": subscription.to_dict()}


@router.post("/cancel")
async def cancel_subscription(
    request: SubscriptionIdRequest,
    caller: AdminCaller = Depends(get_admin_caller),
    service: AdminActivationService = Depends(get_admin_service)
) -> Dict[str, Any]:
    subscription = service.cancel(caller, request.subscription_id)
    return {"success": True, "subscription": subscription.to_dict()}
