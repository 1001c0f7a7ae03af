"""Razorpay provider against a mocked HTTP transport."""
import json
from unittest.mock import patch

import httpx
import pytest

from invoiz.features.billing.provider import (
    BillingWebhookPayloadError,
    BillingWebhookSignatureError,
    PaymentGatewayError,
    PaymentNotFoundError,
)
from invoiz.features.billing.razorpay_provider import RazorpayProvider, hmac_sha256_hex


def _provider(handler, webhook_secret="whsec"):
    return RazorpayProvider(
        key_id="rzp_test_key",
        key_secret="key_secret",
        webhook_secret=webhook_secret,
        api_base="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(handler),
    )


def _no_http(request):
    raise AssertionError(f"unexpected call {request.url}")


def test_missing_keys_rejected(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "RAZORPAY_KEY_ID", None)
    with pytest.raises(PaymentGatewayError):
        RazorpayProvider(key_secret="x")


def test_create_order_posts_amount_and_truncated_receipt():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"id": "order_abc", "amount": 54900, "currency": "INR", "receipt": "r"})

    order = _provider(handler).create_order(54900, "INR", "rcpt_" + "x" * 60, notes={"plan_id": "pro"})

    assert order.order_id == "order_abc"
    assert order.amount == 54900
    assert seen["path"] == "/v1/orders"
    assert len(seen["body"]["receipt"]) == 40
    assert seen["body"]["notes"] == {"plan_id": "pro"}
    assert seen["auth"].startswith("Basic ")


def test_create_order_without_id_is_gateway_error():
    provider = _provider(lambda r: httpx.Response(200, json={"amount": 100}))
    with pytest.raises(PaymentGatewayError):
        provider.create_order(100, "INR", "rcpt_1")


def test_server_error_is_gateway_error_not_not_found():
    provider = _provider(lambda r: httpx.Response(502, text="bad gateway"))
    with pytest.raises(PaymentGatewayError) as exc:
        provider.fetch_payment("pay_1")
    assert not isinstance(exc.value, PaymentNotFoundError)


def test_unknown_payment_is_not_found():
    provider = _provider(lambda r: httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}}))
    with pytest.raises(PaymentNotFoundError):
        provider.fetch_payment("pay_missing")


def test_transport_error_is_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(PaymentGatewayError):
        _provider(handler).fetch_payment("pay_1")


def test_fetch_payment_maps_entity():
    provider = _provider(
        lambda r: httpx.Response(
            200, json={"id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 100, "method": "upi"}
        )
    )
    payment = provider.fetch_payment("pay_1")
    assert payment.is_captured
    assert payment.order_id == "order_1"
    assert payment.method == "upi"


def test_list_payments_for_order():
    def handler(request):
        assert request.url.path == "/v1/orders/order_1/payments"
        return httpx.Response(
            200,
            json={
                "count": 2,
                "items": [
                    {"id": "pay_1", "order_id": "order_1", "status": "failed"},
                    {"id": "pay_2", "order_id": "order_1", "status": "captured"},
                ],
            },
        )

    payments = _provider(handler).list_payments_for_order("order_1")
    assert [p.status for p in payments] == ["failed", "captured"]


def test_payment_signature():
    provider = _provider(_no_http)
    good = hmac_sha256_hex("key_secret", b"order_1|pay_1")
    assert provider.verify_payment_signature("order_1", "pay_1", good)
    assert not provider.verify_payment_signature("order_1", "pay_2", good)
    assert not provider.verify_payment_signature("order_1", "pay_1", "")


def _event(event="payment.captured", entity=None):
    entity = entity if entity is not None else {"id": "pay_1", "order_id": "order_1", "status": "captured"}
    return json.dumps({"event": event, "payload": {"payment": {"entity": entity}}}).encode()


def test_webhook_signed_event_parsed():
    body = _event()
    event = _provider(_no_http).parse_webhook(
        {"X-Razorpay-Signature": hmac_sha256_hex("whsec", body)}, body
    )
    assert event.signature_verified
    assert event.event_type == "payment.captured"
    assert event.order_id == "order_1"
    assert event.payment_id == "pay_1"


def test_webhook_bad_signature_rejected():
    body = _event()
    with pytest.raises(BillingWebhookSignatureError):
        _provider(_no_http).parse_webhook({"x-razorpay-signature": "deadbeef"}, body)


def test_webhook_missing_signature_rejected_when_secret_configured():
    with pytest.raises(BillingWebhookSignatureError):
        _provider(_no_http).parse_webhook({}, _event())


def test_webhook_without_secret_is_unverified():
    event = _provider(_no_http, webhook_secret="").parse_webhook({}, _event())
    assert event.signature_verified is False
    assert event.order_id == "order_1"


def test_webhook_malformed_json():
    body = b"{not json"
    with pytest.raises(BillingWebhookPayloadError):
        _provider(_no_http).parse_webhook({"x-razorpay-signature": hmac_sha256_hex("whsec", body)}, body)


def test_webhook_odd_payload_shape_yields_empty_entity():
    body = json.dumps({"event": "order.paid", "payload": {"payment": "nope"}}).encode()
    event = _provider(_no_http, webhook_secret="").parse_webhook({}, body)
    assert event.event_type == "order.paid"
    assert event.order_id is None
    assert event.payload == {}


def test_non_ascii_payment_signature_is_a_mismatch():
    provider = _provider(_no_http)
    assert provider.verify_payment_signature("order_1", "pay_1", "é" * 64) is False


def test_webhook_non_ascii_signature_rejected():
    body = _event()
    with pytest.raises(BillingWebhookSignatureError):
        _provider(_no_http).parse_webhook({"x-razorpay-signature": "\xe9" * 64}, body)


def test_each_call_uses_a_closed_scoped_client():
    clients = []
    real_client = httpx.Client

    def tracking_client(*args, **kwargs):
        client = real_client(*args, **kwargs)
        clients.append(client)
        return client

    provider = _provider(
        lambda r: httpx.Response(200, json={"id": "pay_1", "order_id": "order_1", "status": "captured"})
    )
    with patch("invoiz.features.billing.razorpay_provider.httpx.Client", side_effect=tracking_client):
        provider.fetch_payment("pay_1")
        provider.fetch_payment("pay_1")

    assert len(clients) == 2
    assert all(c.is_closed for c in clients)
