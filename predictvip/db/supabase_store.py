"""
Record store backed by Supabase PostgREST with the service role client.

Same compare-and-set contract as the SQL store: every subscription write
filters on the row's `version` and reports a miss as None.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from postgrest.exceptions import APIError
from supabase import Client

from predictvip.core.config import ADMIN_ROLE, SubscriptionStatus
from predictvip.core.exceptions import PersistenceError
from predictvip.core.supa_request import service_client
from predictvip.db.models import Subscription, to_utc, utcnow
from predictvip.db.store import RecordStore

logger = structlog.get_logger(__name__)

_DATETIME_FIELDS = ("started_at", "expires_at", "expiry_warning_sent_for", "created_at", "updated_at")

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return to_utc(value)
    try:
        return to_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Unparseable timestamp from record store", value=value)
        return None


def _to_subscription(row: Dict[str, Any]) -> Subscription:
    data = dict(row)
    for field in _DATETIME_FIELDS:
        if field in data:
            data[field] = _parse_datetime(data[field])
    data.setdefault("version", 0)
    known = Subscription.model_fields.keys()
    return Subscription(**{k: v for k, v in data.items() if k in known})


class SupabaseRecordStore(RecordStore):
    """Record store using the Supabase service role client."""

    def __init__(self, client: Client = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = service_client()
        return self._client

    def _execute(self, query, action: str, ignore_codes=()):
        try:
            return query.execute()
        except APIError as e:
            if e.code in ignore_codes:
                logger.info("Supabase request rejected as expected", action=action, code=e.code)
                return None
            logger.error("Supabase request failed", action=action, code=e.code, error=e.message)
            raise PersistenceError(f"Failed to {action}")
        except Exception as e:
            logger.error("Supabase request failed", action=action, error=str(e))
            raise PersistenceError(f"Failed to {action}")

    def _subscriptions(self):
        return self.client.table("subscriptions")

    def _first(self, response) -> Optional[Subscription]:
        return _to_subscription(response.data[0]) if response.data else None

    def get_subscription(self, subscription_id):
        response = self._execute(
            self._subscriptions().select("*").eq("id", subscription_id).limit(1),
            "load subscription",
        )
        return self._first(response)

    def insert_subscription(self, subscription):
        payload = {
            key: _serialize(value)
            for key, value in subscription.model_dump().items()
        }
        response = self._execute(self._subscriptions().insert(payload), "create subscription")
        if not response.data:
            raise PersistenceError("Failed to create subscription")
        return _to_subscription(response.data[0])

    def conditional_update(self, subscription_id, expected_version, values):
        payload = {key: _serialize(value) for key, value in values.items()}
        payload["version"] = expected_version + 1
        payload.setdefault("updated_at", _serialize(utcnow()))

        response = self._execute(
            self._subscriptions()
            .update(payload)
            .eq("id", subscription_id)
            .eq("version", expected_version),
            "update subscription",
        )
        return self._first(response)

    def find_live_subscription(self, email, plan_type, now):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("payment_email", email.lower())
            .eq("plan_type", plan_type)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .gt("expires_at", _serialize(now))
            .order("expires_at", desc=True)
            .limit(1),
            "find live subscription",
        )
        return self._first(response)

    def find_pending_subscription(self, email, plan_type):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("payment_email", email.lower())
            .eq("plan_type", plan_type)
            .eq("status", SubscriptionStatus.PENDING.value)
            .order("created_at")
            .limit(1),
            "find pending subscription",
        )
        return self._first(response)

    def find_active_by_email(self, email):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("payment_email", email.lower())
            .eq("status", SubscriptionStatus.ACTIVE.value),
            "find active subscriptions",
        )
        return [_to_subscription(row) for row in response.data or []]

    def find_live_for_user(self, user_id, now):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("user_id", user_id)
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .gt("expires_at", _serialize(now))
            .order("expires_at", desc=True)
            .limit(1),
            "find subscription for user",
        )
        return self._first(response)

    def find_live_for_email(self, email, now):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("payment_email", email.lower())
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .gt("expires_at", _serialize(now))
            .order("expires_at", desc=True)
            .limit(1),
            "find subscription for email",
        )
        return self._first(response)

    def list_active_expiring_between(self, start, end):
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .gte("expires_at", _serialize(start))
            .lte("expires_at", _serialize(end)),
            "list expiring subscriptions",
        )
        return [_to_subscription(row) for row in response.data or []]

    def expire_overdue(self, now):
        # PostgREST cannot bump version in a bulk update, so expire row by row
        # with the same compare-and-set as every other write.
        response = self._execute(
            self._subscriptions()
            .select("*")
            .eq("status", SubscriptionStatus.ACTIVE.value)
            .lt("expires_at", _serialize(now)),
            "list overdue subscriptions",
        )
        expired = []
        for row in response.data or []:
            candidate = _to_subscription(row)
            updated = self.conditional_update(
                candidate.id,
                candidate.version,
                {"status": SubscriptionStatus.EXPIRED.value, "updated_at": now},
            )
            if updated is not None:
                expired.append(updated)
        return expired

    def payment_reference_seen(self, reference):
        response = self._execute(
            self.client.table("payment_events").select("id").eq("reference", reference).limit(1),
            "check payment reference",
        )
        return bool(response.data)

    def record_payment_event(self, reference, event, email, subscription_id):
        # A concurrent delivery of the same reference hits the unique index
        self._execute(
            self.client.table("payment_events").insert({
                "reference": reference,
                "event": event,
                "payment_email": email,
                "subscription_id": subscription_id,
            }),
            "record payment event",
            ignore_codes=(UNIQUE_VIOLATION,),
        )

    def find_profile_id_by_email(self, email):
        response = self._execute(
            self.client.table("profiles").select("id").eq("email", email.lower()).limit(1),
            "find profile",
        )
        return response.data[0]["id"] if response.data else None

    def profile_exists(self, user_id):
        response = self._execute(
            self.client.table("profiles").select("id").eq("id", user_id).limit(1),
            "check profile",
        )
        return bool(response.data)

    def email_for_user(self, user_id):
        response = self._execute(
            self.client.table("profiles").select("email").eq("id", user_id).limit(1),
            "load profile email",
        )
        return response.data[0]["email"] if response.data else None

    def has_role(self, user_id, role=ADMIN_ROLE):
        response = self._execute(
            self.client.table("user_roles").select("role").eq("user_id", user_id).eq("role", role).limit(1),
            "check role",
        )
        return bool(response.data)

    def insert_notification(self, user_id, type, title, message):
        self._execute(
            self.client.table("notifications").insert({
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
            }),
            "create notification",
        )
