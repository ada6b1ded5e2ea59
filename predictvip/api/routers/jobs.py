"""
Scheduled job endpoints.

The expiry sweep normally runs from Celery beat; this endpoint lets an
external cron trigger the same pass.
"""
import hmac
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header
import structlog

from predictvip.core.config import CRON_SECRET_HEADER
from predictvip.core.exceptions import AuthenticationError
from predictvip.core.settings import settings
from predictvip.api.services.expiry import ExpirySweeper
from predictvip.db.store import RecordStore, get_record_store

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def verify_cron_secret(cron_secret: Optional[str] = Header(None, alias=CRON_SECRET_HEADER)) -> None:
    """Require the shared cron secret when one is configured."""
    if not settings.cron_secret:
        return
    if not cron_secret or not hmac.compare_digest(cron_secret, settings.cron_secret):
        logger.warning("Rejected sweep trigger with bad cron secret")
        raise AuthenticationError("Invalid cron secret")


@router.post("/check-subscription-expiry", dependencies=[Depends(verify_cron_secret)])
async def check_subscription_expiry(
    store: RecordStore = Depends(get_record_store)
) -> Dict[str, Any]:
    """Send expiry warnings and expire overdue subscriptions."""
    result = await ExpirySweeper(store).run()
    return result.to_response()
