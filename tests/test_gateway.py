import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from foodeli_api.gateway import PaystackGateway, build_reference, parse_paid_at, parse_transaction
from shared.utils import GatewayException

SECRET = "sk_test_gateway"


def make_gateway(handler):
    return PaystackGateway(SECRET, base_url="https://api.paystack.test", transport=httpx.MockTransport(handler))


async def test_initialize_sends_minor_units_and_reference():
    seen = []

    def handler(request):
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(200, json={
            "status": True,
            "message": "Authorization URL created",
            "data": {
                "authorization_url": "https://checkout.paystack.test/abc",
                "access_code": "abc",
                "reference": body["reference"],
            },
        })

    gateway = make_gateway(handler)
    tx = await gateway.initialize_transaction(
        "ada@example.com", Decimal("3500.50"), "64b0000000000000000000aa", "http://localhost:3000/payment/callback"
    )

    request = seen[0]
    payload = json.loads(request.content)
    assert request.method == "POST"
    assert request.url.path == "/transaction/initialize"
    assert request.headers["Authorization"] == f"Bearer {SECRET}"
    assert payload["amount"] == 350050
    assert payload["metadata"]["orderId"] == "64b0000000000000000000aa"
    assert payload["callback_url"] == "http://localhost:3000/payment/callback"
    assert tx.reference == payload["reference"]
    assert tx.reference.startswith("order_64b0000000000000000000aa_")
    assert tx.authorization_url == "https://checkout.paystack.test/abc"

async def test_verify_converts_amount_and_reads_channel():
    def handler(request):
        assert request.url.path == "/transaction/verify/order_x_1"
        return httpx.Response(200, json={
            "status": True,
            "data": {
                "id": 4099260516,
                "status": "success",
                "reference": "order_x_1",
                "amount": 350000,
                "paid_at": "2026-10-19T10:15:30.000Z",
                "gateway_response": "Successful",
                "authorization": {"channel": "bank"},
            },
        })

    tx = await make_gateway(handler).verify_transaction("order_x_1")

    assert tx.success is True
    assert tx.amount == Decimal("3500.00")
    assert tx.channel == "bank"
    assert tx.provider_reference == "4099260516"
    assert tx.paid_at == datetime(2026, 10, 19, 10, 15, 30)

async def test_verify_abandoned_transaction_is_not_success():
    def handler(request):
        return httpx.Response(200, json={
            "status": True,
            "data": {"status": "abandoned", "reference": "order_x_2", "amount": 350000},
        })

    tx = await make_gateway(handler).verify_transaction("order_x_2")

    assert tx.success is False
    assert tx.raw_status == "abandoned"

@pytest.mark.parametrize("response", [
    httpx.Response(200, json={"status": False, "message": "Invalid key"}),
    httpx.Response(400, json={"status": False, "message": "Transaction reference not found"}),
    httpx.Response(502, text="<html>Bad gateway</html>"),
])
async def test_provider_errors_map_to_gateway_exception(response):
    gateway = make_gateway(lambda request: response)

    with pytest.raises(GatewayException) as exc_info:
        await gateway.verify_transaction("order_x_3")

    assert exc_info.value.status_code == 502
    # provider text is never surfaced
    assert "Invalid key" not in exc_info.value.detail

async def test_network_errors_map_to_gateway_exception():
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayException, match="timed out"):
        await make_gateway(timeout).verify_transaction("order_x_4")
    with pytest.raises(GatewayException, match="unavailable"):
        await make_gateway(unreachable).verify_transaction("order_x_4")

async def test_initialize_without_checkout_url_fails():
    gateway = make_gateway(lambda request: httpx.Response(200, json={"status": True, "data": {}}))

    with pytest.raises(GatewayException):
        await gateway.initialize_transaction("ada@example.com", Decimal("10"), "o1", "http://cb")


def test_webhook_signature():
    gateway = PaystackGateway(SECRET)
    body = b'{"event":"charge.success"}'
    signature = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    assert gateway.verify_webhook_signature(body, signature) is True
    assert gateway.verify_webhook_signature(body + b" ", signature) is False
    assert gateway.verify_webhook_signature(body, "") is False
    assert gateway.verify_webhook_signature(body, None) is False

def test_build_reference_format():
    reference = build_reference("abc")
    prefix, order_id, millis = reference.split("_")

    assert prefix == "order"
    assert order_id == "abc"
    assert millis.isdigit() and len(millis) == 13

def test_parse_paid_at():
    assert parse_paid_at("2026-10-19T11:15:30+01:00") == datetime(2026, 10, 19, 10, 15, 30)
    assert parse_paid_at(None) is None
    assert parse_paid_at("yesterday") is None

def test_parse_transaction_prefers_top_level_channel():
    tx = parse_transaction({"status": "Success", "reference": "r", "amount": 150, "channel": "card",
                            "authorization": {"channel": "bank"}})

    assert tx.success is True
    assert tx.amount == Decimal("1.50")
    assert tx.channel == "card"

def test_webhook_signature_with_non_ascii_header():
    gateway = PaystackGateway(SECRET)

    assert gateway.verify_webhook_signature(b"{}", "\xe9abc") is False
    assert gateway.verify_webhook_signature(b"{}", "\udce9abc") is False
