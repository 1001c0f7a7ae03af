"""
invoiz/models/transaction.py

Ledger entry for one checkout attempt.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict

from invoiz.core.timeutil import isoformat_z

TXN_PENDING = "pending"
TXN_COMPLETED = "completed"
TXN_FAILED = "failed"
TXN_REFUNDED = "refunded"

TERMINAL_STATUSES = frozenset({TXN_COMPLETED, TXN_FAILED, TXN_REFUNDED})


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str
    plan_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    verification_method: Optional[str] = None
    amount: int
    currency: str = "INR"
    status: str = TXN_PENDING
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def summary(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "plan_id": self.plan_id,
            "order_id": self.gateway_order_id,
            "payment_id": self.gateway_payment_id,
            "amount": self.amount / 100,
            "currency": self.currency,
            "status": self.status,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }
