"""
invoiz/models/plan.py

Subscription plan (static catalog entry).
"""

from typing import Tuple
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    A purchasable subscription plan.

    Prices are in minor units of `currency` (paise for INR). Plans are
    looked up by identity and never mutated at runtime.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price: int
    currency: str = "INR"
    duration_months: int
    features: Tuple[str, ...] = ()

    @property
    def price_major(self) -> float:
        return self.price / 100

    @property
    def duration_text(self) -> str:
        if self.duration_months == 1:
            return "1 month"
        if self.duration_months % 12 == 0:
            years = self.duration_months // 12
            return "1 year" if years == 1 else f"{years} years"
        return f"{self.duration_months} months"
