"""
Razorpay payment gateway implementation.

Implements the PaymentGateway protocol against the Razorpay REST API
using httpx. Handles client signature and webhook signature verification.
"""
import hashlib
import hmac
import json
from typing import Dict, Any, Optional, List

import httpx

from invoiz.core.config import get_settings
from invoiz.features.billing.provider import (
    GatewayOrder,
    GatewayPayment,
    PaymentWebhookEvent,
    PaymentGatewayError,
    PaymentNotFoundError,
    BillingWebhookSignatureError,
    BillingWebhookPayloadError,
)


SIGNATURE_HEADER = "x-razorpay-signature"
RECEIPT_MAX_LENGTH = 40


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    # Compared as bytes: compare_digest rejects non-ASCII str
    return hmac.compare_digest(expected.encode(), provided.encode("utf-8", "surrogateescape"))


def _payment_from_entity(entity: Dict[str, Any]) -> GatewayPayment:
    return GatewayPayment(
        payment_id=str(entity.get("id") or ""),
        order_id=entity.get("order_id"),
        status=str(entity.get("status") or ""),
        amount=entity.get("amount"),
        method=entity.get("method"),
    )


class RazorpayProvider:
    """Razorpay implementation of PaymentGateway protocol."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Razorpay provider.

        Args:
            key_id: API key id (defaults to RAZORPAY_KEY_ID)
            key_secret: API key secret, also signs client callbacks (defaults to RAZORPAY_KEY_SECRET)
            webhook_secret: Webhook secret (defaults to RAZORPAY_WEBHOOK_SECRET)
            api_base: API root (defaults to RAZORPAY_API_BASE)
            transport: Optional httpx transport (tests)
        """
        cfg = get_settings()
        self.key_id = key_id or cfg.RAZORPAY_KEY_ID
        self.key_secret = key_secret or cfg.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else cfg.RAZORPAY_WEBHOOK_SECRET
        self.api_base = (api_base or cfg.RAZORPAY_API_BASE).rstrip("/")

        if not self.key_id or not self.key_secret:
            raise PaymentGatewayError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not configured")

        self.timeout = timeout or cfg.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _request(self, method: str, path: str, json_payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with httpx.Client(
                base_url=self.api_base,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=json_payload)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Failed to contact Razorpay: {e}")

        if response.status_code in (400, 404):
            raise PaymentNotFoundError(f"Razorpay rejected {method} {path}: {response.status_code}")
        if response.status_code >= 400:
            raise PaymentGatewayError(f"Razorpay error on {method} {path}: {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise PaymentGatewayError("Invalid response received from Razorpay")

        if not isinstance(payload, dict):
            raise PaymentGatewayError("Unexpected response format from Razorpay")
        return payload

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create Razorpay order."""
        data = self._request(
            "POST",
            "/orders",
            {
                "amount": amount,
                "currency": currency,
                "receipt": receipt[:RECEIPT_MAX_LENGTH],
                "notes": notes or {},
            },
        )
        order_id = str(data.get("id") or "")
        if not order_id.startswith("order_"):
            raise PaymentGatewayError("Razorpay returned an order without id")
        return GatewayOrder(
            order_id=order_id,
            amount=int(data.get("amount", amount)),
            currency=str(data.get("currency", currency)),
            receipt=data.get("receipt"),
        )

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        return _payment_from_entity(self._request("GET", f"/payments/{payment_id}"))

    def list_payments_for_order(self, order_id: str) -> List[GatewayPayment]:
        data = self._request("GET", f"/orders/{order_id}/payments")
        return [_payment_from_entity(item) for item in data.get("items", []) if isinstance(item, dict)]

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        expected = hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}".encode())
        return signatures_match(expected, signature)

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookEvent:
        """Verify Razorpay webhook signature and parse event."""
        normalized = {k.lower(): v for k, v in headers.items()}
        signature_verified = False
        if self.webhook_secret:
            provided = (normalized.get(SIGNATURE_HEADER) or "").strip()
            if not provided:
                raise BillingWebhookSignatureError("Missing webhook signature")
            expected = hmac_sha256_hex(self.webhook_secret, body)
            if not signatures_match(expected, provided):
                raise BillingWebhookSignatureError("Invalid webhook signature")
            signature_verified = True

        try:
            event = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise BillingWebhookPayloadError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not isinstance(event.get("event"), str):
            raise BillingWebhookPayloadError("Invalid payload: missing event")

        return self._parse_event(event, signature_verified)

    def _parse_event(self, event: Dict[str, Any], signature_verified: bool) -> PaymentWebhookEvent:
        """Parse Razorpay event into normalized PaymentWebhookEvent."""
        payload = event.get("payload")
        payment = payload.get("payment") if isinstance(payload, dict) else None
        entity = payment.get("entity") if isinstance(payment, dict) else None
        if not isinstance(entity, dict):
            entity = {}

        return PaymentWebhookEvent(
            event_type=event["event"],
            order_id=entity.get("order_id"),
            payment_id=entity.get("id"),
            payment_status=entity.get("status"),
            signature_verified=signature_verified,
            payload=entity,
        )
