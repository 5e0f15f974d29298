"""Tests for the Toss Payments client."""

import asyncio
import base64
import json

import httpx
import pytest

from payment_service.gateway import GatewayRejected, GatewayUnavailable, TossPaymentsClient
from shared.errors import Internal


def _client(stub, secret="test_sk_123"):
    return TossPaymentsClient(
        httpx.AsyncClient(transport=httpx.MockTransport(stub.handler)),
        secret,
        "https://api.toss.test",
    )


def test_confirm_sends_basic_auth_and_body(gateway_stub):
    gateway_stub.respond("/v1/payments/confirm", 200, {"paymentKey": "pk-1", "status": "DONE"})

    data = asyncio.run(_client(gateway_stub).confirm("pk-1", "o1", 15000))

    assert data["status"] == "DONE"
    request = gateway_stub.requests[0]
    expected = base64.b64encode(b"test_sk_123:").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert json.loads(request.content) == {"paymentKey": "pk-1", "orderId": "o1", "amount": 15000}


def test_cancel_forwards_idempotency_and_tax_free_amount(gateway_stub):
    gateway_stub.respond("/v1/payments/pk-1/cancel", 200, {"status": "PARTIAL_CANCELED"})

    asyncio.run(
        _client(gateway_stub).cancel(
            "pk-1",
            "broken item",
            cancel_amount=3000,
            tax_free_amount=0,
            refund_receive_account={"bank": "88", "accountNumber": "123", "holderName": "Kim"},
            idempotency_key="idem-1",
        )
    )

    request = gateway_stub.requests[0]
    assert request.headers["Idempotency-Key"] == "idem-1"
    assert json.loads(request.content) == {
        "cancelReason": "broken item",
        "cancelAmount": 3000,
        "taxFreeAmount": 0,
        "refundReceiveAccount": {"bank": "88", "accountNumber": "123", "holderName": "Kim"},
    }


def test_full_cancel_omits_optional_fields(gateway_stub):
    asyncio.run(_client(gateway_stub).cancel("pk-1", "reason"))

    request = gateway_stub.requests[0]
    assert "Idempotency-Key" not in request.headers
    assert json.loads(request.content) == {"cancelReason": "reason"}


def test_rejection_carries_gateway_payload(gateway_stub):
    gateway_stub.respond(
        "/v1/payments/confirm",
        400,
        {"code": "ALREADY_PROCESSED_PAYMENT", "message": "already processed"},
    )

    with pytest.raises(GatewayRejected) as exc:
        asyncio.run(_client(gateway_stub).confirm("pk-1", "o1", 15000))

    assert exc.value.status_code == 400
    assert exc.value.message == "already processed"
    assert exc.value.payload["code"] == "ALREADY_PROCESSED_PAYMENT"


def test_network_error_is_unavailable(gateway_stub):
    gateway_stub.error = httpx.ConnectError("connection refused")

    with pytest.raises(GatewayUnavailable):
        asyncio.run(_client(gateway_stub).confirm("pk-1", "o1", 15000))


def test_missing_secret_never_calls_gateway(gateway_stub):
    with pytest.raises(Internal):
        asyncio.run(_client(gateway_stub, secret=None).confirm("pk-1", "o1", 15000))
    assert gateway_stub.requests == []
