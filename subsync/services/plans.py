from typing import Dict, Optional

from subsync.errors import Invalid

PLAN_TYPES = ("starter", "professional", "premium")
BILLING_CYCLES = ("monthly", "yearly")


def validate_plan(plan_type: str, billing_cycle: str):
    if plan_type not in PLAN_TYPES:
        raise Invalid(f"Unsupported plan type: {plan_type}", details={"allowed": list(PLAN_TYPES)})
    if billing_cycle not in BILLING_CYCLES:
        raise Invalid(f"Unsupported billing cycle: {billing_cycle}", details={"allowed": list(BILLING_CYCLES)})


def resolve_price_id(plan_type: str, billing_cycle: str,
                     price_ids: Dict[str, str], requested: Optional[str] = None) -> str:
    """A price sent by the client wins; otherwise use the configured catalog."""
    if requested:
        return requested

    validate_plan(plan_type, billing_cycle)
    price_id = price_ids.get(f"{plan_type}:{billing_cycle}")
    if not price_id:
        raise Invalid(f"Unsupported plan: {plan_type} {billing_cycle}")
    return price_id
