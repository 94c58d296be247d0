"""
Plan catalog and calendar helpers shared by the billing services.
"""
import calendar
from datetime import datetime

# ---------------------------------------------------------------------------
# Plans catalog (static, prices in major currency units)
# ---------------------------------------------------------------------------

PLANS_CATALOG = [
    {
        "id": "basic",
        "name": "Basic",
        "amount": 99,
        "daily_chat_limit": 3,
        "monthly_generation_limit": 3,
    },
    {
        "id": "premium",
        "name": "Premium",
        "amount": 199,
        "daily_chat_limit": 5,
        "monthly_generation_limit": 5,
    },
]

_PLANS_BY_ID = {p["id"]: p for p in PLANS_CATALOG}
_PREMIUM_AMOUNT = _PLANS_BY_ID["premium"]["amount"]

# One payment funds one calendar month of access
SUBSCRIPTION_PERIOD_MONTHS = 1
MAX_TRACKS_PER_PAYMENT = 1


def get_plan(plan_tier: str) -> dict:
    """Return the catalog entry for a tier. Raises KeyError for unknown tiers."""
    return _PLANS_BY_ID[plan_tier]


def plan_from_amount(amount: int | None) -> dict:
    """
    Map an amount actually paid to a plan.

    The amount is the single source of truth: 199 is premium, anything else
    falls back to basic.
    """
    if (amount or 0) == _PREMIUM_AMOUNT:
        return _PLANS_BY_ID["premium"]
    return _PLANS_BY_ID["basic"]


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
