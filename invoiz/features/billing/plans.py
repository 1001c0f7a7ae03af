"""
invoiz/features/billing/plans.py

Static subscription plan catalog.

Handles:
- Plan lookup and listing (catalog order)
- Validity window computation
- Client-facing plan formatting
"""

import calendar
from datetime import datetime
from typing import Dict, List, Any

from invoiz.core.errors import NotFoundError
from invoiz.core.timeutil import as_utc
from invoiz.models.plan import Plan


# Prices in paise
SUBSCRIPTION_PLANS: Dict[str, Plan] = {
    "basic": Plan(
        plan_id="basic",
        name="Basic Plan",
        price=100,
        duration_months=1,
        features=(
            "Up to 50 invoices per month",
            "Basic invoice templates",
            "Customer management",
            "Payment tracking",
            "Email support",
        ),
    ),
    "pro": Plan(
        plan_id="pro",
        name="Pro Plan",
        price=54900,
        duration_months=6,
        features=(
            "Up to 500 invoices per month",
            "Premium invoice templates",
            "Advanced customer management",
            "Payment tracking & reminders",
            "Inventory management",
            "Reports & analytics",
            "Priority email support",
        ),
    ),
    "premium": Plan(
        plan_id="premium",
        name="Premium Plan",
        price=99900,
        duration_months=12,
        features=(
            "Unlimited invoices",
            "All premium templates",
            "Advanced customer & vendor management",
            "Automated payment reminders",
            "Advanced inventory management",
            "Detailed reports & analytics",
            "GST compliance features",
            "Phone & email support",
        ),
    ),
    "enterprise": Plan(
        plan_id="enterprise",
        name="Enterprise Plan",
        price=249900,
        duration_months=36,
        features=(
            "Everything in Premium",
            "Multi-location support",
            "Custom invoice templates",
            "API access",
            "Advanced integrations",
            "Dedicated account manager",
            "24/7 priority support",
            "Custom reporting",
        ),
    ),
}


def get_plan(plan_id: str) -> Plan:
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if plan is None:
        raise NotFoundError(f"Invalid subscription plan: {plan_id}")
    return plan


def list_plans() -> List[Plan]:
    return list(SUBSCRIPTION_PLANS.values())


def add_months(start: datetime, months: int) -> datetime:
    """Advance by calendar months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_end_date(plan: Plan, start: datetime) -> datetime:
    """
    Last instant of validity for a plan bought at `start`.

    The subscription stays valid through its whole last calendar day (UTC),
    whatever the time of purchase:
    2024-01-15T10:00Z + 1 month -> 2024-02-15T23:59:59.999Z
    """
    end = add_months(as_utc(start), plan.duration_months)
    return end.replace(hour=23, minute=59, second=59, microsecond=999000)


def format_plan(plan: Plan) -> Dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "price": plan.price,
        "price_major": plan.price_major,
        "currency": plan.currency,
        "duration_months": plan.duration_months,
        "duration_text": plan.duration_text,
        "features": list(plan.features),
    }
