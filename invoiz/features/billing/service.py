"""
Billing service orchestrator.

Coordinates the subscription purchase lifecycle:
- Order creation at the gateway + pending ledger entry
- Payment verification (client callback, verify-by-order, webhook, reconcile)
- Atomic activation: ledger pending->completed and subscription write in one transaction
- Best-effort confirmation notice after commit

Per ledger entry the lifecycle is NO_ORDER -> PENDING -> COMPLETED | FAILED.
Gateway calls never happen while a database transaction is open.

All Razorpay-specific code is in razorpay_provider.py.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Mapping

from invoiz.core.config import get_settings
from invoiz.core.database import get_db_session
from invoiz.core.errors import (
    ConflictError,
    InconsistentStateError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
    VerificationFailedError,
    WebhookPayloadError,
    WebhookSignatureError,
    AppError,
)
from invoiz.core.timeutil import utc_now
from invoiz.features.billing import ledger
from invoiz.features.billing.plans import get_plan, compute_end_date, format_plan
from invoiz.features.billing.provider import (
    PaymentGateway,
    PaymentGatewayError,
    PaymentNotFoundError,
    BillingWebhookSignatureError,
    BillingWebhookPayloadError,
    PaymentWebhookEvent,
)
from invoiz.features.billing.razorpay_provider import RazorpayProvider
from invoiz.features.billing.verification import (
    METHOD_SIGNATURE,
    METHOD_WEBHOOK,
    PaymentClaim,
    VerificationChain,
    VerificationOutcome,
    call_with_retries,
    default_chain,
    gateway_only_chain,
)
from invoiz.features.notifications.service import (
    Scheduler,
    SubscriptionNotice,
    deliver_subscription_notice,
    run_inline,
)
from invoiz.features.subscriptions.service import get_subscription, write_subscription
from invoiz.features.users.service import get_user
from invoiz.models.plan import Plan
from invoiz.models.subscription import Subscription, STATUS_ACTIVE
from invoiz.models.transaction import Transaction, TXN_COMPLETED, TXN_PENDING
from invoiz.models.user import User

logger = logging.getLogger("invoiz")

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"

ACTIVATED = "activated"
ALREADY_COMPLETED = "already_completed"
TRANSACTION_FAILED = "transaction_failed"

HISTORY_MAX_LIMIT = 100


def billing_enabled() -> bool:
    """Check if billing is enabled (Razorpay keys configured)."""
    cfg = get_settings()
    return bool(cfg.RAZORPAY_KEY_ID and cfg.RAZORPAY_KEY_SECRET)


def get_provider() -> Optional[PaymentGateway]:
    """Get payment gateway if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return RazorpayProvider()
    except PaymentGatewayError:
        logger.warning("billing.provider.unavailable", extra={"error_code": "provider_init_failed"})
        return None


def _require_provider() -> PaymentGateway:
    provider = get_provider()
    if provider is None:
        raise UpstreamUnavailableError("Billing is not enabled")
    return provider


@dataclass(frozen=True)
class ActivationResult:
    """How an attempt to complete a ledger entry ended."""
    status: str
    transaction: Transaction
    plan: Plan
    subscription: Optional[Subscription] = None

    def to_response(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "status": self.status,
            "transaction_id": self.transaction.transaction_id,
            "subscription_info": self.subscription.info(now) if self.subscription else None,
            "plan_details": format_plan(self.plan),
        }


def _new_receipt(user_id: str) -> str:
    # Random part first: the gateway truncates receipts to 40 chars
    return f"rcpt_{secrets.token_hex(6)}_{user_id}"


def create_order(user_id: str, plan_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Start a checkout: create the gateway order and a pending ledger entry.

    Raises:
        NotFoundError: Unknown plan or user
        ConflictError: User already has an active subscription
        UpstreamUnavailableError: Gateway unreachable or billing disabled
    """
    ts = now or utc_now()
    plan = get_plan(plan_id)

    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    if user.has_active_subscription(ts):
        raise ConflictError("User already has an active subscription")

    provider = _require_provider()
    # Not retried: a timed-out create may still have produced an order
    try:
        order = provider.create_order(
            amount=plan.price,
            currency=plan.currency,
            receipt=_new_receipt(user_id),
            notes={"user_id": user_id, "plan_id": plan.plan_id},
        )
    except PaymentGatewayError as e:
        logger.warning("billing.order.gateway_error", extra={"user_id": user_id, "error_code": "gateway_error"})
        raise UpstreamUnavailableError(f"Failed to create payment order: {e}")

    entry = ledger.create_entry(user_id, plan, order.order_id, plan.price, plan.currency, now=ts)
    logger.info(
        "billing.order.created",
        extra={"user_id": user_id, "order_id": order.order_id, "transaction_id": entry.transaction_id},
    )

    return {
        "order_id": order.order_id,
        "amount": plan.price,
        "currency": plan.currency,
        "transaction_id": entry.transaction_id,
        "plan_details": format_plan(plan),
        "key_id": get_settings().RAZORPAY_KEY_ID,
    }


def verify_client_payment(
    user_id: str,
    order_id: str,
    payment_id: Optional[str] = None,
    signature: Optional[str] = None,
    plan_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    schedule: Optional[Scheduler] = None,
    chain: Optional[VerificationChain] = None,
) -> Dict[str, Any]:
    """
    Client-triggered verification (checkout callback or verify-by-order).

    Idempotent: repeating a call for a completed entry returns the current
    subscription without touching the gateway or sending another notice.

    Raises:
        ValidationError: order_id missing
        NotFoundError: No ledger entry for (order_id, user_id)
        ConflictError: Entry already failed; a new order is required
        VerificationFailedError: Payment not proven (retryable flag set when it may still capture)
        UpstreamUnavailableError: Gateway unreachable after retries
        InconsistentStateError: Subscription not active right after a committed activation
    """
    if not order_id:
        raise ValidationError("order_id is required")
    ts = now or utc_now()

    with get_db_session() as session:
        entry = ledger.get_for_user_order(session, user_id, order_id)
    if entry is None:
        raise NotFoundError("Transaction not found")

    if plan_id and plan_id != entry.plan_id:
        logger.warning(
            "billing.verify.plan_mismatch",
            extra={"user_id": user_id, "transaction_id": entry.transaction_id, "status": plan_id},
        )

    if entry.status == TXN_COMPLETED:
        return _replay_completed(entry).to_response(ts)
    if entry.is_terminal:
        raise ConflictError(f"Transaction is {entry.status}; create a new order")

    verifier = chain or default_chain(_require_provider())
    outcome = verifier.verify(PaymentClaim(order_id=order_id, payment_id=payment_id, signature=signature))

    if not outcome.verified:
        if not outcome.retryable:
            ledger.mark_failed(entry.transaction_id, now=ts)
        logger.warning(
            "billing.verify.failed",
            extra={
                "user_id": user_id,
                "transaction_id": entry.transaction_id,
                "error_code": "retryable" if outcome.retryable else "rejected",
            },
        )
        raise VerificationFailedError(
            f"Payment verification failed: {outcome.reason}",
            retryable=outcome.retryable,
        )

    # Signature is stored only when it is what proved the payment
    stored_signature = signature if outcome.method == METHOD_SIGNATURE else None
    result = _activate(entry, outcome, signature=stored_signature, now=ts, schedule=schedule)
    if result.status == TRANSACTION_FAILED:
        raise ConflictError("Transaction is failed; create a new order")
    return result.to_response(ts)


def _replay_completed(entry: Transaction) -> ActivationResult:
    return ActivationResult(
        status=ALREADY_COMPLETED,
        transaction=entry,
        plan=get_plan(entry.plan_id),
        subscription=get_subscription(entry.user_id),
    )


def _activate(
    entry: Transaction,
    outcome: VerificationOutcome,
    *,
    signature: Optional[str],
    now: datetime,
    schedule: Optional[Scheduler],
) -> ActivationResult:
    """
    Complete a verified entry.

    Ledger compare-and-swap and subscription write share one transaction;
    losing the swap writes nothing and sends nothing.
    """
    plan = get_plan(entry.plan_id)
    subscription = Subscription(
        plan_id=plan.plan_id,
        start_date=now,
        end_date=compute_end_date(plan, now),
        status=STATUS_ACTIVE,
        activation_reference=outcome.payment_id,
        amount_paid=entry.amount,
    )

    with get_db_session() as session:
        won = ledger.mark_completed(
            session,
            entry.transaction_id,
            payment_id=outcome.payment_id,
            signature=signature,
            method=outcome.method,
            now=now,
        )
        if won:
            previous = get_subscription(entry.user_id, session=session)
            if previous.is_active(now):
                # Two orders paid while both passed the create_order check
                logger.warning(
                    "billing.activation.overwrote_active",
                    extra={
                        "user_id": entry.user_id,
                        "transaction_id": entry.transaction_id,
                        "payment_id": previous.activation_reference,
                    },
                )
            write_subscription(session, entry.user_id, subscription, now=now)

    if not won:
        return _resolve_lost_race(entry, plan)

    user = get_user(entry.user_id)
    if user is None or not user.has_active_subscription(now):
        logger.critical(
            "billing.activation.inconsistent",
            extra={"user_id": entry.user_id, "transaction_id": entry.transaction_id, "error_code": "inconsistent_state"},
        )
        raise InconsistentStateError(
            f"Subscription not active after completing transaction {entry.transaction_id}"
        )

    logger.info(
        "billing.activation.completed",
        extra={
            "user_id": entry.user_id,
            "transaction_id": entry.transaction_id,
            "payment_id": outcome.payment_id,
            "status": outcome.method,
        },
    )
    _schedule_notice(user, plan, entry, user.subscription, schedule)
    return ActivationResult(status=ACTIVATED, transaction=entry, plan=plan, subscription=user.subscription)


def _resolve_lost_race(entry: Transaction, plan: Plan) -> ActivationResult:
    with get_db_session() as session:
        current = ledger.get_by_transaction_id(session, entry.transaction_id)

    if current is not None and current.status == TXN_COMPLETED:
        logger.info(
            "billing.activation.raced",
            extra={"user_id": entry.user_id, "transaction_id": entry.transaction_id, "status": ALREADY_COMPLETED},
        )
        return ActivationResult(
            status=ALREADY_COMPLETED,
            transaction=current,
            plan=plan,
            subscription=get_subscription(entry.user_id),
        )

    logger.warning(
        "billing.activation.raced",
        extra={
            "user_id": entry.user_id,
            "transaction_id": entry.transaction_id,
            "status": current.status if current else "missing",
        },
    )
    return ActivationResult(status=TRANSACTION_FAILED, transaction=current or entry, plan=plan)


def _schedule_notice(
    user: User,
    plan: Plan,
    entry: Transaction,
    subscription: Subscription,
    schedule: Optional[Scheduler],
) -> None:
    notice = SubscriptionNotice(
        email=user.email,
        full_name=user.full_name,
        plan_name=plan.name,
        amount=entry.amount,
        currency=entry.currency,
        valid_until=subscription.end_date,
        user_id=user.user_id,
        transaction_id=entry.transaction_id,
    )
    try:
        (schedule or run_inline)(deliver_subscription_notice, notice)
    except Exception as e:
        logger.warning(
            "notification.schedule_failed",
            extra={"user_id": user.user_id, "transaction_id": entry.transaction_id, "error_code": type(e).__name__},
        )


def process_webhook(
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: Optional[datetime] = None,
    schedule: Optional[Scheduler] = None,
) -> Dict[str, Any]:
    """
    Process a gateway webhook (idempotent, duplicate deliveries are no-ops).

    Returns:
        {"status": <outcome>, "event": <event type>}; business no-ops are
        reported through `status`, not as errors.

    Raises:
        WebhookSignatureError: Secret configured and signature missing/invalid
        WebhookPayloadError: Body is not a gateway event
        UpstreamUnavailableError: Gateway confirmation needed but unreachable
    """
    provider = _require_provider()
    ts = now or utc_now()

    try:
        event = provider.parse_webhook(dict(headers), body)
    except BillingWebhookSignatureError as e:
        logger.warning("billing.webhook.rejected", extra={"error_code": "invalid_signature"})
        raise WebhookSignatureError(str(e))
    except BillingWebhookPayloadError as e:
        logger.warning("billing.webhook.rejected", extra={"error_code": "invalid_payload"})
        raise WebhookPayloadError(str(e))

    if event.event_type == EVENT_PAYMENT_CAPTURED:
        status = _handle_payment_captured(provider, event, ts, schedule)
    elif event.event_type == EVENT_PAYMENT_FAILED:
        status = _handle_payment_failed(provider, event, ts)
    else:
        status = "ignored"

    logger.info(
        "billing.webhook.processed",
        extra={
            "event_type": event.event_type,
            "order_id": event.order_id,
            "payment_id": event.payment_id,
            "status": status,
        },
    )
    return {"status": status, "event": event.event_type}


def _handle_payment_captured(
    provider: PaymentGateway,
    event: PaymentWebhookEvent,
    now: datetime,
    schedule: Optional[Scheduler],
) -> str:
    if not event.order_id:
        return "ignored"

    with get_db_session() as session:
        entry = ledger.get_by_order(session, event.order_id)
    if entry is None:
        return "no_transaction"
    if entry.status == TXN_COMPLETED:
        return ALREADY_COMPLETED
    if entry.status != TXN_PENDING:
        # Money was captured for an entry we already gave up on
        logger.error(
            "billing.webhook.captured_after_failure",
            extra={"user_id": entry.user_id, "transaction_id": entry.transaction_id, "payment_id": event.payment_id},
        )
        return f"transaction_{entry.status}"

    if event.signature_verified and event.payment_id:
        outcome = VerificationOutcome.success(METHOD_WEBHOOK, event.payment_id)
    else:
        # Unsigned delivery: the event proves nothing, ask the gateway
        outcome = gateway_only_chain(provider).verify(
            PaymentClaim(order_id=event.order_id, payment_id=event.payment_id)
        )
        if not outcome.verified:
            return "verification_pending"

    result = _activate(entry, outcome, signature=None, now=now, schedule=schedule)
    if result.status == ACTIVATED:
        return "completed"
    return result.status


def _handle_payment_failed(provider: PaymentGateway, event: PaymentWebhookEvent, now: datetime) -> str:
    if not event.order_id:
        return "ignored"

    with get_db_session() as session:
        entry = ledger.get_by_order(session, event.order_id)
    if entry is None:
        return "no_transaction"
    if entry.status != TXN_PENDING:
        return f"already_{entry.status}"

    if not event.signature_verified:
        if not event.payment_id:
            return "ignored"
        try:
            payment = call_with_retries(lambda: provider.fetch_payment(event.payment_id))
        except PaymentNotFoundError:
            return "ignored"
        if payment.order_id != event.order_id or payment.status != "failed":
            return "ignored"

    if ledger.mark_failed(entry.transaction_id, now=now):
        return "failed_marked"
    return "no_change"


def check_payment_status(
    user_id: str,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Ledger entry status plus the user's live subscription state."""
    if not transaction_id and not order_id:
        raise ValidationError("transaction_id or order_id is required")

    with get_db_session() as session:
        if transaction_id:
            entry = ledger.get_by_transaction_id(session, transaction_id)
        else:
            entry = ledger.get_for_user_order(session, user_id, order_id)
    if entry is None or entry.user_id != user_id:
        raise NotFoundError("Transaction not found")

    subscription = get_subscription(user_id)
    return {
        "transaction_status": entry.status,
        "payment_id": entry.gateway_payment_id,
        "has_active_subscription": subscription.is_active(now),
        "subscription_info": subscription.info(now),
        "transaction_details": entry.summary(),
    }


def get_history(user_id: str, limit: int = 10) -> Dict[str, Any]:
    limit = max(1, min(limit, HISTORY_MAX_LIMIT))
    return {"transactions": [t.summary() for t in ledger.list_for_user(user_id, limit=limit)]}


def reconcile_pending(
    now: Optional[datetime] = None,
    min_age_minutes: Optional[int] = None,
    limit: Optional[int] = None,
    provider: Optional[PaymentGateway] = None,
    schedule: Optional[Scheduler] = None,
) -> Dict[str, int]:
    """
    Settle pending entries whose client callback and webhook never arrived.

    Uses the gateway's view of the order only. Entries that may still be
    paid are left pending; per-entry errors are logged and counted.
    """
    cfg = get_settings()
    ts = now or utc_now()
    age = min_age_minutes if min_age_minutes is not None else cfg.RECONCILE_MIN_AGE_MINUTES
    batch = limit if limit is not None else cfg.RECONCILE_BATCH_SIZE
    gateway = provider or _require_provider()
    chain = gateway_only_chain(gateway)

    stats = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}
    for entry in ledger.list_stale_pending(ts - timedelta(minutes=age), limit=batch):
        stats["checked"] += 1
        try:
            outcome = chain.verify(PaymentClaim(order_id=entry.gateway_order_id))
            if outcome.verified:
                result = _activate(entry, outcome, signature=None, now=ts, schedule=schedule)
                if result.status == ACTIVATED:
                    stats["completed"] += 1
            elif outcome.retryable:
                stats["pending"] += 1
            elif ledger.mark_failed(entry.transaction_id, now=ts):
                stats["failed"] += 1
        except AppError as e:
            stats["errors"] += 1
            logger.error(
                "billing.reconcile.entry_failed",
                extra={"transaction_id": entry.transaction_id, "error_code": e.code},
            )

    logger.info("billing.reconcile.done", extra={"status": str(stats)})
    return stats
