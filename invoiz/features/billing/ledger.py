"""
Subscription transaction ledger.

Append-only record of checkout attempts:
- One row per order, created `pending`
- Status transitions are conditional updates (compare-and-swap on status),
  so two concurrent attempts can never both move the same row
- `completed` rows are never rewritten here
"""
from __future__ import annotations

import secrets
import string
import time
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.orm import Session

from invoiz.core.database import get_db_session, subscription_transactions as txns
from invoiz.core.timeutil import utc_now, as_utc
from invoiz.models.plan import Plan
from invoiz.models.transaction import Transaction, TXN_PENDING, TXN_COMPLETED, TXN_FAILED

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_transaction_id() -> str:
    """TXN_<epoch ms>_<9 random chars>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"TXN_{int(time.time() * 1000)}_{suffix}"


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        gateway_order_id=row.gateway_order_id,
        gateway_payment_id=row.gateway_payment_id,
        gateway_signature=row.gateway_signature,
        verification_method=row.verification_method,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def create_entry(
    user_id: str,
    plan: Plan,
    order_id: str,
    amount: int,
    currency: str,
    now: Optional[datetime] = None,
) -> Transaction:
    ts = now or utc_now()
    entry = Transaction(
        transaction_id=generate_transaction_id(),
        user_id=user_id,
        plan_id=plan.plan_id,
        gateway_order_id=order_id,
        amount=amount,
        currency=currency,
        status=TXN_PENDING,
        created_at=ts,
        updated_at=ts,
    )
    with get_db_session() as session:
        session.execute(
            insert(txns).values(
                transaction_id=entry.transaction_id,
                user_id=entry.user_id,
                plan_id=entry.plan_id,
                gateway_order_id=entry.gateway_order_id,
                amount=entry.amount,
                currency=entry.currency,
                status=entry.status,
                created_at=ts,
                updated_at=ts,
            )
        )
    return entry


def get_for_user_order(session: Session, user_id: str, order_id: str) -> Optional[Transaction]:
    row = session.execute(
        select(txns).where(
            and_(txns.c.gateway_order_id == order_id, txns.c.user_id == user_id)
        )
    ).first()
    return _row_to_transaction(row) if row else None


def get_by_order(session: Session, order_id: str) -> Optional[Transaction]:
    """Webhook lookup: the gateway order id alone (no user context)."""
    row = session.execute(
        select(txns).where(txns.c.gateway_order_id == order_id).order_by(txns.c.id).limit(1)
    ).first()
    return _row_to_transaction(row) if row else None


def get_by_transaction_id(session: Session, transaction_id: str) -> Optional[Transaction]:
    row = session.execute(select(txns).where(txns.c.transaction_id == transaction_id)).first()
    return _row_to_transaction(row) if row else None


def mark_completed(
    session: Session,
    transaction_id: str,
    *,
    payment_id: Optional[str],
    signature: Optional[str],
    method: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    pending -> completed, inside the caller's transaction.

    Returns False when the row was no longer pending (another attempt won).
    """
    result = session.execute(
        update(txns)
        .where(and_(txns.c.transaction_id == transaction_id, txns.c.status == TXN_PENDING))
        .values(
            status=TXN_COMPLETED,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            verification_method=method,
            updated_at=now or utc_now(),
        )
    )
    return result.rowcount == 1


def mark_failed(transaction_id: str, now: Optional[datetime] = None, session: Optional[Session] = None) -> bool:
    """pending -> failed. Returns False when the row had already left pending."""
    stmt = (
        update(txns)
        .where(and_(txns.c.transaction_id == transaction_id, txns.c.status == TXN_PENDING))
        .values(status=TXN_FAILED, updated_at=now or utc_now())
    )
    if session is not None:
        return session.execute(stmt).rowcount == 1
    with get_db_session() as own_session:
        return own_session.execute(stmt).rowcount == 1


def list_for_user(user_id: str, limit: int = 10) -> List[Transaction]:
    with get_db_session() as session:
        rows = session.execute(
            select(txns)
            .where(txns.c.user_id == user_id)
            .order_by(txns.c.created_at.desc(), txns.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [_row_to_transaction(r) for r in rows]


def list_stale_pending(older_than: datetime, limit: int = 100) -> List[Transaction]:
    with get_db_session() as session:
        rows = session.execute(
            select(txns)
            .where(and_(txns.c.status == TXN_PENDING, txns.c.created_at < older_than))
            .order_by(txns.c.created_at, txns.c.id)
            .limit(limit)
        ).fetchall()
    return [_row_to_transaction(r) for r in rows]
