"""
Auth utilities for the Invoiz API.

Tokens are issued by the account service; here we only verify them and
extract the user id. Falls back to the X-User-Id header when
ALLOW_HEADER_AUTH is enabled (local development and tests).
"""
from fastapi import Depends, Header, HTTPException, Request
from typing import Optional
import jwt
import logging

from invoiz.core.config import get_settings
from invoiz.core.errors import SubscriptionRequiredError

logger = logging.getLogger(__name__)


def verify_access_token(token: str) -> dict:
    """
    Verify an access token and return its claims.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Decoded claims; 'sub' is guaranteed to be present

    Raises:
        HTTPException 401: Invalid or expired token
    """
    cfg = get_settings()
    if not cfg.JWT_SECRET:
        raise HTTPException(status_code=401, detail="Token authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            cfg.JWT_SECRET,
            algorithms=[cfg.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when ALLOW_HEADER_AUTH is on)
    3. Raise 401 Unauthorized

    The user row is upserted so the subscription slot exists.
    """
    from invoiz.features.users.service import get_or_create_user

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_access_token(auth_header[7:])
        user_id = claims["sub"]
        get_or_create_user(user_id, email=claims.get("email"), full_name=claims.get("name"))
        request.state.user_id = user_id
        return user_id

    if x_user_id and get_settings().ALLOW_HEADER_AUTH:
        get_or_create_user(x_user_id)
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) header",
    )


def require_active_subscription(user_id: str = Depends(get_current_user_id)) -> str:
    """
    Gate a route on a live subscription.

    Raises:
        SubscriptionRequiredError 403: No active subscription (carries subscription_info)
    """
    from invoiz.features.subscriptions.service import get_subscription

    subscription = get_subscription(user_id)
    if not subscription.is_active():
        raise SubscriptionRequiredError(
            "Active subscription required",
            subscription_info=subscription.info(),
        )
    return user_id
