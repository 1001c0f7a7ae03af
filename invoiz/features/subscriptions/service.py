"""
Subscription state service.

The subscription slot lives on the user row. It is written in exactly two
places: activation (inside the billing engine's transaction, via
write_subscription) and cancellation (here).
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import update, and_
from sqlalchemy.orm import Session

from invoiz.core.database import get_db_session, users as app_users
from invoiz.core.errors import ConflictError, NotFoundError
from invoiz.core.timeutil import utc_now
from invoiz.features.users.service import get_user
from invoiz.models.subscription import Subscription, STATUS_ACTIVE, STATUS_CANCELLED

logger = logging.getLogger("invoiz")


def get_subscription(user_id: str, session: Optional[Session] = None) -> Subscription:
    user = get_user(user_id, session=session)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user.subscription


def has_active_subscription(user_id: str, now: Optional[datetime] = None, session: Optional[Session] = None) -> bool:
    return get_subscription(user_id, session=session).is_active(now)


def get_subscription_status(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    subscription = get_subscription(user_id)
    active = subscription.is_active(now)
    return {
        "has_active_subscription": active,
        "subscription_info": subscription.info(now),
        "subscription_required": not active,
    }


def write_subscription(session: Session, user_id: str, subscription: Subscription, now: Optional[datetime] = None) -> None:
    """Overwrite the user's subscription slot inside the caller's transaction.

    Raises NotFoundError when the user row is missing so the caller's
    transaction rolls back instead of committing a half activation.
    """
    result = session.execute(
        update(app_users)
        .where(app_users.c.user_id == user_id)
        .values(
            subscription_plan_id=subscription.plan_id,
            subscription_start_date=subscription.start_date,
            subscription_end_date=subscription.end_date,
            subscription_status=subscription.status,
            subscription_activation_reference=subscription.activation_reference,
            subscription_amount_paid=subscription.amount_paid,
            updated_at=now or utc_now(),
        )
    )
    if result.rowcount != 1:
        raise NotFoundError(f"User not found: {user_id}")


def cancel_subscription(user_id: str, now: Optional[datetime] = None) -> Subscription:
    """Cancel the active subscription in place; end_date is kept as history."""
    ts = now or utc_now()
    with get_db_session() as session:
        current = get_subscription(user_id, session=session)
        if not current.is_active(ts):
            raise ConflictError("No active subscription to cancel")

        result = session.execute(
            update(app_users)
            .where(
                and_(
                    app_users.c.user_id == user_id,
                    app_users.c.subscription_status == STATUS_ACTIVE,
                )
            )
            .values(subscription_status=STATUS_CANCELLED, updated_at=ts)
        )
        if result.rowcount == 0:
            raise ConflictError("Subscription is already cancelled")

    logger.info("subscription.cancelled", extra={"user_id": user_id})
    return current.model_copy(update={"status": STATUS_CANCELLED})
