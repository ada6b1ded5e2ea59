"""
Webhooks router for the Paystack payment gateway.

The signature is an HMAC-SHA512 over the exact bytes Paystack sent, so the
raw body is read before any JSON parsing.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, Request
import structlog

from predictvip.core.config import SIGNATURE_HEADER
from predictvip.core.settings import settings
from predictvip.api.services.payments import PaymentEventIngestor
from predictvip.db.store import RecordStore, get_record_store

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = structlog.get_logger(__name__)


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    store: RecordStore = Depends(get_record_store)
) -> Dict[str, Any]:
    """
    Handle Paystack webhook events.

    Expected payload:
    {
        "event": "charge.success|subscription.disable|subscription.not_renew",
        "data": {
            "reference": "gateway_transaction_reference",
            "amount": 850000,
            "customer": {"email": "payer@example.com"},
            "metadata": {"plan_id": "1_month"},
            "plan": {"plan_code": "PLN_1month"}
        }
    }

    Returns 200 for processed events and recognized duplicates, 401 for a bad
    signature, 400 for an unreadable body or a charge without a customer e-mail.
    """
    payload = await request.body()

    result = await PaymentEventIngestor(store).ingest(payload, signature)

    logger.info("Paystack webhook processed", paystack_event=result.event, outcome=result.outcome)
    return result.to_response()


@router.get("/health")
async def webhooks_health() -> Dict[str, Any]:
    """Webhook endpoint health and signature verification status."""
    return {
        "status": "healthy",
        "providers": {
            "paystack": {
                "signature_verification": "enabled" if settings.paystack_secret_key else "not_configured",
                "events": ["charge.success", "subscription.disable", "subscription.not_renew"],
            }
        },
    }
