"""
User domain service.
- get_or_create_user(user_id)
- get_user(user_id)
"""

from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from invoiz.core.database import get_db_session, users as app_users
from invoiz.core.timeutil import utc_now, as_utc
from invoiz.models.subscription import Subscription
from invoiz.models.user import User


def row_to_subscription(row) -> Subscription:
    return Subscription(
        plan_id=row.subscription_plan_id,
        start_date=as_utc(row.subscription_start_date),
        end_date=as_utc(row.subscription_end_date),
        status=row.subscription_status,
        activation_reference=row.subscription_activation_reference,
        amount_paid=row.subscription_amount_paid,
    )


def row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        email=row.email,
        full_name=row.full_name,
        status=row.status,
        subscription=row_to_subscription(row),
    )


def get_user(user_id: str, session=None) -> Optional[User]:
    if session is not None:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return row_to_user(row) if row else None
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return row_to_user(row) if row else None


def get_or_create_user(user_id: str, email: Optional[str] = None, full_name: Optional[str] = None) -> User:
    existing = get_user(user_id)
    if existing:
        # Fill contact details the first time a token carries them
        changes = {}
        if email and not existing.email:
            changes["email"] = email
        if full_name and not existing.full_name:
            changes["full_name"] = full_name
        if changes:
            with get_db_session() as session:
                session.execute(
                    update(app_users).where(app_users.c.user_id == user_id).values(**changes, updated_at=utc_now())
                )
            return existing.model_copy(update=changes)
        return existing

    now = utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    email=email,
                    full_name=full_name,
                    status="active",
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Concurrent first request for the same user
        existing = get_user(user_id)
        if existing:
            return existing
        raise

    return User(user_id=user_id, created_at=now, email=email, full_name=full_name, status="active")
