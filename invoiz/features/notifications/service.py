"""
Subscription confirmation notices.

Delivery is best effort: a failed send is logged and dropped, it never
undoes or fails an activation. Template rendering is the email provider's
job; we only post the template name and its data.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Callable, Any

import httpx

from invoiz.core.config import get_settings
from invoiz.core.timeutil import isoformat_z

logger = logging.getLogger("invoiz")

CONFIRMATION_TEMPLATE = "subscription_confirmation"


@dataclass(frozen=True)
class SubscriptionNotice:
    email: Optional[str]
    full_name: Optional[str]
    plan_name: str
    amount: int
    currency: str
    valid_until: datetime
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def amount_major(self) -> float:
        return self.amount / 100

    def template_data(self) -> dict:
        return {
            "name": self.full_name or "there",
            "plan_name": self.plan_name,
            "amount": self.amount_major,
            "currency": self.currency,
            "valid_until": isoformat_z(self.valid_until),
            "transaction_id": self.transaction_id,
        }


class NotificationSink(Protocol):
    def send_subscription_confirmation(self, notice: SubscriptionNotice) -> None:
        ...


class LoggingNotificationSink:
    """Used when no email API is configured (dev, tests)."""

    def send_subscription_confirmation(self, notice: SubscriptionNotice) -> None:
        logger.info(
            "notification.subscription_confirmation",
            extra={"user_id": notice.user_id, "transaction_id": notice.transaction_id, "status": "logged"},
        )


class HttpEmailSink:
    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        cfg = get_settings()
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender or cfg.EMAIL_FROM
        self.timeout = timeout or cfg.EMAIL_TIMEOUT_SECONDS
        self.transport = transport

    def send_subscription_confirmation(self, notice: SubscriptionNotice) -> None:
        if not notice.email:
            raise ValueError("User has no email address")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "from": self.sender,
            "to": notice.email,
            "subject": f"Subscription activated: {notice.plan_name}",
            "template": CONFIRMATION_TEMPLATE,
            "data": notice.template_data(),
        }
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.api_url, json=body, headers=headers)
            response.raise_for_status()

        logger.info(
            "notification.subscription_confirmation",
            extra={"user_id": notice.user_id, "transaction_id": notice.transaction_id, "status": "sent"},
        )


def get_notification_sink() -> NotificationSink:
    cfg = get_settings()
    if cfg.EMAIL_API_URL:
        return HttpEmailSink(cfg.EMAIL_API_URL, api_key=cfg.EMAIL_API_KEY)
    return LoggingNotificationSink()


def deliver_subscription_notice(notice: SubscriptionNotice, sink: Optional[NotificationSink] = None) -> bool:
    """Send a confirmation. Returns False (and logs) on any failure."""
    try:
        (sink or get_notification_sink()).send_subscription_confirmation(notice)
        return True
    except Exception as e:
        logger.warning(
            "notification.failed",
            extra={
                "user_id": notice.user_id,
                "transaction_id": notice.transaction_id,
                "error_code": type(e).__name__,
            },
        )
        return False


# Scheduler signature: schedule(fn, *args). FastAPI's BackgroundTasks.add_task fits it.
Scheduler = Callable[..., Any]


def run_inline(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)
