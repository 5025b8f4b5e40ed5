"""
reconciler/services/plan_catalog.py

Purpose: Billing plan lookup and inference

- Typed view over SUBSCRIPTION_PLANS
- Works out which plan a gateway event paid for when notes are incomplete
"""

from dataclasses import dataclass
from typing import List, Optional

from reconciler.core.logging import get_logger
from reconciler.schemas.webhook import GatewayNotes
from utils.constants import DEFAULT_PLAN, SUBSCRIPTION_PLANS

logger = get_logger(__name__)

_PLAN_TYPE_ALIASES = {
    "premium": "premium",
    "super_user": "super_user",
    "superuser": "super_user",
    "super": "super_user",
}

_VARIANT_ALIASES = {
    "month": "monthly",
    "monthly": "monthly",
    "year": "yearly",
    "yearly": "yearly",
    "annual": "yearly",
    "annually": "yearly",
}


@dataclass(frozen=True)
class Plan:
    plan_type: str
    variant: str
    plan_id: str
    amount: int
    duration_months: int
    name: str
    display_price: str
    questions: int = 0  # Question credits granted per charge; premium is unlimited


def get_plan(plan_type: Optional[str], variant: Optional[str]) -> Optional[Plan]:
    plan_type = _PLAN_TYPE_ALIASES.get((plan_type or "").lower())
    if not plan_type:
        return None
    variant = (variant or "").lower()
    variant = _VARIANT_ALIASES.get(variant, variant)
    entry = SUBSCRIPTION_PLANS.get(plan_type, {}).get(variant)
    if entry is None:
        return None
    return Plan(plan_type=plan_type, variant=variant, **entry)


def list_plans() -> List[Plan]:
    return [
        get_plan(plan_type, variant)
        for plan_type, variants in SUBSCRIPTION_PLANS.items()
        for variant in variants
    ]


def _by_amount(plan_type: Optional[str], amount: Optional[int]) -> Optional[Plan]:
    # Premium first: 45100 is both premium monthly and the super-user starter pack
    if not amount:
        return None
    for plan in list_plans():
        if plan_type and plan.plan_type != plan_type:
            continue
        if plan.amount == amount:
            return plan
    return None


def _from_notes(notes: GatewayNotes, amount: Optional[int]) -> Optional[Plan]:
    if notes.subscription_type:
        for plan in list_plans():
            if notes.subscription_type in (f"{plan.plan_type}_{plan.variant}", plan.plan_id):
                return plan

    plan_type = _PLAN_TYPE_ALIASES.get(notes.plan_type or "")
    if not plan_type and notes.subscription_type:
        # e.g. "premium" or "super_user" on its own
        plan_type = _PLAN_TYPE_ALIASES.get(notes.subscription_type)
    if not plan_type:
        return None

    plan = get_plan(plan_type, notes.plan_variant or notes.billing_period)
    if plan:
        return plan
    plan = _by_amount(plan_type, amount)
    if plan:
        return plan
    return get_plan(plan_type, "monthly" if plan_type == "premium" else "topup_451")


def _from_plan_id(gateway_plan_id: Optional[str]) -> Optional[Plan]:
    if not gateway_plan_id:
        return None
    for plan in list_plans():
        if plan.plan_id == gateway_plan_id:
            return plan
    return None


def _from_description(description: Optional[str], amount: Optional[int]) -> Optional[Plan]:
    if not description:
        return None
    text = description.lower()
    if "super" in text:
        return _by_amount("super_user", amount) or get_plan("super_user", "topup_451")
    if "yearly" in text or "annual" in text:
        return get_plan("premium", "yearly")
    if "monthly" in text or "premium" in text:
        return get_plan("premium", "monthly")
    return None


def infer_plan(
    notes: GatewayNotes,
    gateway_plan_id: Optional[str] = None,
    description: Optional[str] = None,
    amount: Optional[int] = None
) -> Plan:
    """
    Determines the plan an event pays for.

    Order: notes, gateway plan id, description text, amount, then the
    default plan (premium monthly).
    """
    plan = (
        _from_notes(notes, amount)
        or _from_plan_id(gateway_plan_id)
        or _from_description(description, amount)
        or _by_amount(None, amount)
    )
    if plan is None:
        logger.warning(
            f"Could not infer plan (plan_id={gateway_plan_id}, amount={amount}); "
            f"defaulting to {DEFAULT_PLAN[0]} {DEFAULT_PLAN[1]}"
        )
        plan = get_plan(*DEFAULT_PLAN)
    return plan
