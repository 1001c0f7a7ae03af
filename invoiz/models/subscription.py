"""
invoiz/models/subscription.py

Per-user subscription slot.

The stored `status` is advisory: a row can say "active" and still be lapsed
by date, so activity is always recomputed against `end_date` at read time.
"""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict

from invoiz.core.timeutil import utc_now, as_utc, isoformat_z

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"


class Subscription(BaseModel):
    """Immutable snapshot of a user's subscription; replaced wholesale on activation."""
    model_config = ConfigDict(frozen=True)

    plan_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None
    activation_reference: Optional[str] = None
    amount_paid: Optional[int] = None  # minor units

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.end_date is None:
            return False
        current = as_utc(now) if now else utc_now()
        return self.status == STATUS_ACTIVE and as_utc(self.end_date) > current

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days from the start of today (UTC) to end_date, never negative."""
        if self.end_date is None:
            return 0
        current = as_utc(now) if now else utc_now()
        start_of_today = current.replace(hour=0, minute=0, second=0, microsecond=0)
        delta = as_utc(self.end_date) - start_of_today
        return max(0, delta // timedelta(days=1))

    def info(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "status": self.status,
            "start_date": isoformat_z(self.start_date),
            "end_date": isoformat_z(self.end_date),
            "days_remaining": self.days_remaining(now),
            "is_active": self.is_active(now),
            "amount_paid": self.amount_paid / 100 if self.amount_paid is not None else None,
        }
