"""
Payment authenticity checks.

Each verifier answers one question about a claimed payment and returns a
VerificationOutcome; the chain runs them in order and the first positive
outcome wins. Order of the default chain:
- SignatureVerifier: HMAC the checkout UI handed to the client (cheap, local)
- GatewayPaymentVerifier: ask the gateway directly (authoritative)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

from invoiz.core.config import get_settings
from invoiz.core.errors import UpstreamUnavailableError
from invoiz.features.billing.provider import (
    GatewayPayment,
    PaymentGateway,
    PaymentGatewayError,
    PaymentNotFoundError,
)

logger = logging.getLogger("invoiz")

T = TypeVar("T")

METHOD_SIGNATURE = "signature"
METHOD_GATEWAY_PAYMENT = "gateway_payment"
METHOD_GATEWAY_ORDER = "gateway_order"
METHOD_WEBHOOK = "webhook"


@dataclass(frozen=True)
class PaymentClaim:
    """What a caller says happened at checkout."""
    order_id: str
    payment_id: Optional[str] = None
    signature: Optional[str] = None


@dataclass(frozen=True)
class VerificationOutcome:
    verified: bool
    method: Optional[str] = None
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    # True when the payment may still turn captured (no terminal verdict yet)
    retryable: bool = False

    @classmethod
    def success(cls, method: str, payment_id: Optional[str]) -> "VerificationOutcome":
        return cls(verified=True, method=method, payment_id=payment_id)

    @classmethod
    def failure(cls, reason: str, retryable: bool = False) -> "VerificationOutcome":
        return cls(verified=False, reason=reason, retryable=retryable)


def _compute_backoff(attempt: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at 8 seconds."""
    return min(base_seconds * (2 ** attempt), 8.0)


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a gateway call, retrying transport failures.

    PaymentNotFoundError is an answer, not a failure, and is re-raised at once.
    Exhausted retries raise UpstreamUnavailableError.
    """
    cfg = get_settings()
    attempts = max(1, max_attempts if max_attempts is not None else cfg.GATEWAY_MAX_RETRIES)
    base = backoff_seconds if backoff_seconds is not None else cfg.GATEWAY_RETRY_BACKOFF_SECONDS

    last_error: Optional[PaymentGatewayError] = None
    for attempt in range(attempts):
        try:
            return fn()
        except PaymentNotFoundError:
            raise
        except PaymentGatewayError as e:
            last_error = e
            logger.warning(
                "billing.gateway.retry",
                extra={"error_code": "gateway_error", "status": f"attempt_{attempt + 1}"},
            )
            if attempt + 1 < attempts and base > 0:
                sleep(_compute_backoff(attempt, base))

    raise UpstreamUnavailableError(f"Payment gateway unavailable: {last_error}")


class SignatureVerifier:
    name = METHOD_SIGNATURE

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    def verify(self, claim: PaymentClaim) -> VerificationOutcome:
        if not claim.payment_id or not claim.signature:
            return VerificationOutcome.failure("signature not provided")
        if self.gateway.verify_payment_signature(claim.order_id, claim.payment_id, claim.signature):
            return VerificationOutcome.success(METHOD_SIGNATURE, claim.payment_id)
        return VerificationOutcome.failure("signature mismatch")


class GatewayPaymentVerifier:
    """
    Server-side confirmation against the gateway.

    With a payment id the payment is fetched directly; without one the
    order's payments are listed. Only a captured payment belonging to the
    claimed order proves the purchase.
    """

    name = METHOD_GATEWAY_PAYMENT

    def __init__(
        self,
        gateway: PaymentGateway,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def _call(self, fn: Callable[[], T]) -> T:
        return call_with_retries(
            fn,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
        )

    def verify(self, claim: PaymentClaim) -> VerificationOutcome:
        if claim.payment_id:
            return self._verify_payment(claim)
        return self._verify_order(claim)

    def _verify_payment(self, claim: PaymentClaim) -> VerificationOutcome:
        try:
            payment = self._call(lambda: self.gateway.fetch_payment(claim.payment_id))
        except PaymentNotFoundError:
            return VerificationOutcome.failure("payment not found at gateway")
        return _judge_payment(payment, claim.order_id, METHOD_GATEWAY_PAYMENT)

    def _verify_order(self, claim: PaymentClaim) -> VerificationOutcome:
        try:
            payments = self._call(lambda: self.gateway.list_payments_for_order(claim.order_id))
        except PaymentNotFoundError:
            return VerificationOutcome.failure("order not found at gateway")

        for payment in payments:
            if payment.is_captured and payment.order_id == claim.order_id:
                return VerificationOutcome.success(METHOD_GATEWAY_ORDER, payment.payment_id)

        if not payments:
            return VerificationOutcome.failure("no payment made for order yet", retryable=True)
        if any(_may_still_capture(p) for p in payments):
            return VerificationOutcome.failure("payment not captured yet", retryable=True)
        return VerificationOutcome.failure("no captured payment for order")


# Razorpay payment lifecycle: created -> authorized -> captured | failed | refunded
_IN_FLIGHT_STATUSES = {"created", "authorized"}


def _may_still_capture(payment: GatewayPayment) -> bool:
    return payment.status in _IN_FLIGHT_STATUSES


def _judge_payment(payment: GatewayPayment, order_id: str, method: str) -> VerificationOutcome:
    if payment.order_id != order_id:
        return VerificationOutcome.failure("payment does not belong to order")
    if payment.is_captured:
        return VerificationOutcome.success(method, payment.payment_id)
    if _may_still_capture(payment):
        return VerificationOutcome.failure(f"payment not captured yet ({payment.status})", retryable=True)
    return VerificationOutcome.failure(f"payment status is {payment.status or 'unknown'}")


class VerificationChain:
    """Runs verifiers in order; the first verified outcome wins."""

    def __init__(self, verifiers: Sequence):
        self.verifiers: List = list(verifiers)

    def verify(self, claim: PaymentClaim) -> VerificationOutcome:
        failures: List[VerificationOutcome] = []
        for verifier in self.verifiers:
            outcome = verifier.verify(claim)
            if outcome.verified:
                logger.info(
                    "billing.verify.accepted",
                    extra={"order_id": claim.order_id, "payment_id": outcome.payment_id, "status": outcome.method},
                )
                return outcome
            logger.info(
                "billing.verify.rejected",
                extra={"order_id": claim.order_id, "status": verifier.name, "error_code": outcome.reason},
            )
            failures.append(outcome)

        if not failures:
            return VerificationOutcome.failure("no verifier configured")
        return VerificationOutcome(
            verified=False,
            reason="; ".join(f.reason for f in failures if f.reason),
            retryable=any(f.retryable for f in failures),
        )


def default_chain(gateway: PaymentGateway) -> VerificationChain:
    return VerificationChain([SignatureVerifier(gateway), GatewayPaymentVerifier(gateway)])


def gateway_only_chain(gateway: PaymentGateway) -> VerificationChain:
    return VerificationChain([GatewayPaymentVerifier(gateway)])
