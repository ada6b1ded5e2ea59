"""
Paystack webhook ingestion.

Verifies the HMAC-SHA512 signature over the raw request body, derives the
plan from the charge payload and drives the state machine. A verified event
is always acknowledged once processed, even if a notification fails,
otherwise the gateway keeps retrying.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from predictvip.core.config import DEFAULT_PAYMENT_PLAN, NotificationType, PaystackEvent
from predictvip.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    SignatureVerificationError,
    ValidationError,
)
from predictvip.core.monitoring import increment_webhook_events
from predictvip.core.settings import settings
from predictvip.api.services import plan_catalog
from predictvip.api.services.identity import normalize_email
from predictvip.api.services.notifications import NotificationDispatcher
from predictvip.api.services.state_machine import SubscriptionStateMachine
from predictvip.db.models import Subscription
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)

CANCELLATION_EVENTS = {
    PaystackEvent.SUBSCRIPTION_DISABLE.value,
    PaystackEvent.SUBSCRIPTION_NOT_RENEW.value,
}


def verify_paystack_signature(raw_body: bytes, signature: Optional[str],
                              secret: Optional[str] = None) -> bool:
    """
    Check the `x-paystack-signature` header against the raw body.

    Fails closed: no secret configured or no header means not verified.
    """
    secret = secret if secret is not None else settings.paystack_secret_key
    if not secret or not signature:
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@dataclass
class IngestResult:
    """Acknowledgement returned to the gateway."""
    event: str
    outcome: str  # created, activated, renewed, already_active, cancelled, received
    message: str
    subscription: Optional[Subscription] = None
    cancelled_count: int = 0

    def to_response(self) -> Dict[str, Any]:
        response = {
            "received": True,
            "event": self.event,
            "outcome": self.outcome,
            "message": self.message,
        }
        if self.subscription is not None:
            response["subscription_id"] = self.subscription.id
            response["linked"] = self.subscription.user_id is not None
        if self.outcome == "cancelled":
            response["cancelled_count"] = self.cancelled_count
        return response


def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    # Paystack sends metadata as an object, or as a JSON string for some checkouts
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def _plan_code(data: Dict[str, Any], metadata: Dict[str, Any]) -> Optional[str]:
    plan = data.get("plan")
    if isinstance(plan, dict) and plan.get("plan_code"):
        return plan["plan_code"]
    if isinstance(plan, str) and plan:
        return plan
    return metadata.get("plan_type")


def derive_plan_type(data: Dict[str, Any]) -> str:
    """
    Plan for a charge: metadata.plan_id, then the paid amount, then the
    gateway plan code, then the default plan.

    When metadata and amount disagree, metadata wins and the mismatch is
    logged.
    """
    metadata = _metadata(data)
    amount_plan = plan_catalog.plan_from_amount(data.get("amount"))

    if metadata.get("plan_id"):
        plan_type = plan_catalog.normalize_plan_type(metadata["plan_id"])
        if amount_plan and amount_plan != plan_type:
            logger.warning("Metadata plan disagrees with paid amount",
                           metadata_plan=plan_type, amount_plan=amount_plan,
                           amount=data.get("amount"), reference=data.get("reference"))
        return plan_type

    if amount_plan:
        return amount_plan

    code = _plan_code(data, metadata)
    if code:
        return plan_catalog.normalize_plan_type(code)

    return DEFAULT_PAYMENT_PLAN


def _payer_email(data: Dict[str, Any]) -> str:
    customer = data.get("customer") or {}
    return normalize_email(customer.get("email") if isinstance(customer, dict) else None)


def _customer_email(data: Dict[str, Any]) -> str:
    email = _payer_email(data)
    if not email:
        raise ValidationError("Missing customer email")
    return email


class PaymentEventIngestor:
    """Turns verified gateway events into subscription transitions."""

    def __init__(self, store: RecordStore, state_machine: SubscriptionStateMachine = None,
                 notifier: NotificationDispatcher = None):
        self.store = store
        self.state_machine = state_machine or SubscriptionStateMachine(store)
        self.notifier = notifier or NotificationDispatcher(store)

    async def ingest(self, raw_body: bytes, signature: Optional[str]) -> IngestResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            SignatureVerificationError: signature missing or wrong
            ValidationError: body is not JSON or has no customer e-mail
        """
        if not verify_paystack_signature(raw_body, signature):
            increment_webhook_events("unknown", "rejected")
            logger.warning("Rejected webhook with invalid signature",
                           has_signature=bool(signature),
                           secret_configured=bool(settings.paystack_secret_key))
            raise SignatureVerificationError()

        try:
            payload = json.loads(raw_body)
        except ValueError:
            increment_webhook_events("unknown", "invalid")
            raise ValidationError("Invalid JSON payload")
        if not isinstance(payload, dict):
            increment_webhook_events("unknown", "invalid")
            raise ValidationError("Invalid JSON payload")

        event = str(payload.get("event") or "")
        data = payload.get("data") or {}
        logger.info("Paystack webhook received", paystack_event=event, reference=data.get("reference"))

        try:
            if event == PaystackEvent.CHARGE_SUCCESS.value:
                result = await self._handle_charge(event, data)
            elif event in CANCELLATION_EVENTS:
                result = self._handle_cancellation(event, data)
            else:
                logger.info("Ignoring unhandled Paystack event", paystack_event=event)
                result = IngestResult(event=event, outcome="received", message="Event received")
        except ValidationError:
            increment_webhook_events(event, "invalid")
            raise

        increment_webhook_events(event, result.outcome)
        return result

    async def _handle_charge(self, event: str, data: Dict[str, Any]) -> IngestResult:
        email = _customer_email(data)
        plan_type = derive_plan_type(data)
        reference = data.get("reference") or None
        now = self.state_machine.clock()

        if reference and self.store.payment_reference_seen(reference):
            logger.info("Payment reference already processed", reference=reference, email=email)
            live = self.store.find_live_subscription(email, plan_type, now)
            return self._already_active(event, self.state_machine.try_link(live) if live else None)

        live = self.store.find_live_subscription(email, plan_type, now)
        if live is not None:
            if not reference or live.payment_reference == reference:
                logger.info("Duplicate payment for live subscription",
                            subscription_id=live.id, email=email, plan_type=plan_type)
                return self._already_active(event, self.state_machine.try_link(live))

            try:
                renewed = self.state_machine.renew(live.id, source="payment", payment_reference=reference)
            except InvalidTransitionError:
                # Expired or cancelled between the lookup and the write
                logger.info("Live subscription changed before renewal, creating new one",
                            subscription_id=live.id)
            else:
                self._record(reference, event, email, renewed)
                await self._notify_activated(renewed)
                return IngestResult(event=event, outcome="renewed",
                                    message="Subscription renewed", subscription=renewed)

        pending = self.store.find_pending_subscription(email, plan_type)
        if pending is not None:
            try:
                activated = self.state_machine.activate(pending.id, source="payment")
            except ConflictError:
                return self._already_active(event, self.store.get_subscription(pending.id))
            except InvalidTransitionError:
                activated = None
            if activated is not None:
                self._record(reference, event, email, activated)
                await self._notify_activated(activated)
                return IngestResult(event=event, outcome="activated",
                                    message="Pending subscription activated", subscription=activated)

        created = self.state_machine.create_active(email, plan_type, source="payment",
                                                   payment_reference=reference)
        self._record(reference, event, email, created)
        await self._notify_activated(created)
        return IngestResult(event=event, outcome="created",
                            message="Subscription created", subscription=created)

    def _handle_cancellation(self, event: str, data: Dict[str, Any]) -> IngestResult:
        email = _payer_email(data)
        if not email:
            logger.warning("Cancellation event without customer email", paystack_event=event)
            return IngestResult(event=event, outcome="received", message="No customer email, nothing cancelled")

        cancelled = self.state_machine.cancel_active_for_email(email, source="gateway")
        logger.info("Gateway cancellation applied", email=email, paystack_event=event, cancelled=len(cancelled))
        return IngestResult(event=event, outcome="cancelled", message="Subscription cancelled",
                            cancelled_count=len(cancelled))

    def _already_active(self, event: str, subscription: Optional[Subscription]) -> IngestResult:
        return IngestResult(event=event, outcome="already_active",
                            message="Subscription already active", subscription=subscription)

    def _record(self, reference: Optional[str], event: str, email: str, subscription: Subscription):
        if reference:
            self.store.record_payment_event(reference, event, email, subscription.id)

    async def _notify_activated(self, subscription: Subscription) -> None:
        await self.notifier.notify(NotificationType.SUBSCRIPTION_ACTIVATED, subscription)
