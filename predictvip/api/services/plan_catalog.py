"""
Plan catalog: plan identifier -> price, duration and display label.

Plan identifiers arrive from several places (checkout metadata, gateway plan
codes, admin forms, raw amounts) so resolution is a prioritized rule list.
Nothing here raises: an identifier no rule recognizes resolves to the
shortest paid plan, never to a longer entitlement.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import structlog

from predictvip.core.config import GATEWAY_PLAN_PREFIX

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PlanDefinition:
    """Static plan entry."""
    plan_id: str
    price: int  # NGN
    duration_days: int
    label: str


PLAN_DEFINITIONS = {
    "2_weeks": PlanDefinition("2_weeks", 4500, 14, "2 Weeks"),
    "1_month": PlanDefinition("1_month", 8500, 30, "Monthly"),
    "6_months": PlanDefinition("6_months", 35000, 180, "6 Months"),
    "1_year": PlanDefinition("1_year", 55000, 365, "1 Year"),
}

SHORTEST_PLAN = min(PLAN_DEFINITIONS.values(), key=lambda plan: plan.duration_days)

PLAN_ALIASES = {
    "yearly": "1_year",
    "2weeks": "2_weeks",
    "1month": "1_month",
    "6months": "6_months",
}

# Major currency units (gateway amount / 100) -> plan
PRICE_TO_PLAN = {
    "4500": "2_weeks",
    "8500": "1_month",
    "35000": "6_months",
    "55000": "1_year",
    # Legacy USD prices
    "299": "2_weeks",
    "599": "1_month",
    "1999": "6_months",
    "3099": "1_year",
}


def _exact(identifier: str) -> Optional[str]:
    key = identifier.strip().lower()
    if key in PLAN_DEFINITIONS:
        return key
    return PLAN_ALIASES.get(key)


def _gateway_code(identifier: str) -> Optional[str]:
    if identifier.upper().startswith(GATEWAY_PLAN_PREFIX):
        return _exact(identifier[len(GATEWAY_PLAN_PREFIX):])
    return None


def _amount(identifier: str) -> Optional[str]:
    key = identifier.strip()
    if key.isdigit():
        return PRICE_TO_PLAN.get(key)
    return None


def _heuristic(identifier: str) -> Optional[str]:
    plan = identifier.lower()
    if "week" in plan:
        return "2_weeks"
    if "year" in plan or ("12" in plan and "month" in plan):
        return "1_year"
    if "6" in plan and "month" in plan:
        return "6_months"
    if "month" in plan:
        return "1_month"
    return None


# Order matters: earlier rules win
RESOLUTION_RULES: List[Tuple[str, Callable[[str], Optional[str]]]] = [
    ("exact", _exact),
    ("gateway_code", _gateway_code),
    ("amount", _amount),
    ("heuristic", _heuristic),
]


def resolve_plan(identifier: Optional[str]) -> Tuple[PlanDefinition, str]:
    """
    Resolve a free-text plan identifier.

    Returns:
        Tuple of (plan definition, name of the rule that matched or "fallback")
    """
    if identifier is not None and str(identifier).strip():
        text = str(identifier).strip()
        for rule_name, rule in RESOLUTION_RULES:
            plan_id = rule(text)
            if plan_id:
                return PLAN_DEFINITIONS[plan_id], rule_name

    logger.warning("Unrecognized plan identifier, using shortest plan",
                   plan_identifier=identifier, fallback_plan=SHORTEST_PLAN.plan_id)
    return SHORTEST_PLAN, "fallback"


def normalize_plan_type(identifier: Optional[str]) -> str:
    """Canonical plan id for storage."""
    plan, _ = resolve_plan(identifier)
    return plan.plan_id


def duration_days(identifier: Optional[str]) -> int:
    plan, _ = resolve_plan(identifier)
    return plan.duration_days


def price_of(identifier: Optional[str]) -> int:
    plan, _ = resolve_plan(identifier)
    return plan.price


def label_of(identifier: Optional[str]) -> str:
    """Display label; unknown identifiers are shown as typed, underscores spaced."""
    plan, rule = resolve_plan(identifier)
    if rule == "fallback":
        return str(identifier or "").replace("_", " ").strip() or plan.label
    return plan.label


def plan_from_amount(amount_minor_units) -> Optional[str]:
    """Map a gateway amount in minor units (kobo/cents) to a plan id."""
    try:
        major = round(int(amount_minor_units) / 100)
    except (TypeError, ValueError):
        return None
    return PRICE_TO_PLAN.get(str(major))
