"""
Payment gateway protocol.

Defines the interface for payment gateways (Razorpay, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional, List
from dataclasses import dataclass, field


# Only this payment status proves that funds were secured
CAPTURED = "captured"


@dataclass(frozen=True)
class GatewayOrder:
    """Order created at the gateway for one checkout attempt."""
    order_id: str
    amount: int
    currency: str
    receipt: Optional[str] = None


@dataclass(frozen=True)
class GatewayPayment:
    """Payment as reported by the gateway itself."""
    payment_id: str
    order_id: Optional[str]
    status: str
    amount: Optional[int] = None
    method: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.status == CAPTURED


@dataclass(frozen=True)
class PaymentWebhookEvent:
    """Result of verifying and parsing a gateway webhook."""
    event_type: str
    order_id: Optional[str]
    payment_id: Optional[str]
    payment_status: Optional[str]
    signature_verified: bool
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Order creation
    - Payment lookup (by payment id and by order id)
    - Client callback signature verification
    - Webhook signature verification and parsing
    """

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a payment order.

        Args:
            amount: Amount in minor units (paise)
            currency: ISO currency code
            receipt: Caller reference, unique per request (max 40 chars)
            notes: Optional metadata to attach

        Returns:
            The created order

        Raises:
            PaymentGatewayError: If the gateway call fails
        """
        ...

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """
        Fetch a payment by id.

        Raises:
            PaymentNotFoundError: Gateway does not know this payment
            PaymentGatewayError: Transport or server failure
        """
        ...

    def list_payments_for_order(self, order_id: str) -> List[GatewayPayment]:
        """
        List all payment attempts made against an order.

        Raises:
            PaymentNotFoundError: Gateway does not know this order
            PaymentGatewayError: Transport or server failure
        """
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Check the signature the checkout UI hands to the client.

        Returns:
            True only if the signature matches (constant-time comparison)
        """
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookEvent:
        """
        Verify webhook signature (when a secret is configured) and parse event.

        Args:
            headers: HTTP headers (signature header when a secret is set)
            body: Raw webhook body (for signature verification)

        Returns:
            Parsed webhook event

        Raises:
            BillingWebhookSignatureError: Signature missing or invalid
            BillingWebhookPayloadError: Body is not a valid event
        """
        ...


class PaymentGatewayError(Exception):
    """Gateway could not answer (network, timeout, 5xx, bad response)."""
    pass


class PaymentNotFoundError(PaymentGatewayError):
    """Gateway answered that the payment/order does not exist."""
    pass


class BillingWebhookSignatureError(Exception):
    pass


class BillingWebhookPayloadError(Exception):
    pass
