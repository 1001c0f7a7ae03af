from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from invoiz.models.subscription import Subscription


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None
    full_name: Optional[str] = None
    status: str = "active"
    subscription: Subscription = Subscription()

    def has_active_subscription(self, now: Optional[datetime] = None) -> bool:
        return self.subscription.is_active(now)
