"""
Tests for the Mercado Pago PIX gateway
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.models.schemas import PaymentStatus
from app.services.payment_gateway import GatewayError, MercadoPagoGateway, map_provider_status


def fake_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = str(payload)
    response.json.return_value = payload
    return response


@pytest.fixture
def gateway():
    return MercadoPagoGateway(
        access_token="TEST-token",
        base_url="https://mp.test",
        notification_url="https://shop.test/webhooks/mp",
        timeout=5,
    )


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("approved", PaymentStatus.APPROVED),
        ("pending", PaymentStatus.PENDING),
        ("in_process", PaymentStatus.IN_PROCESS),
        ("authorized", PaymentStatus.IN_PROCESS),
        ("rejected", PaymentStatus.REJECTED),
        ("cancelled", PaymentStatus.CANCELLED),
        ("refunded", PaymentStatus.CANCELLED),
        (None, PaymentStatus.IN_PROCESS),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) == expected


async def test_create_intent(gateway):
    payload = {
        "id": 1234567890,
        "status": "pending",
        "point_of_interaction": {
            "transaction_data": {"qr_code": "00020126PIX", "qr_code_base64": "iVBOR"}
        },
    }
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(201, payload),
    ) as request:
        intent = await gateway.create_intent(
            Decimal("50.00"),
            "Corte - Barbearia Teste",
            {"name": "Joao da Silva"},
            external_reference="hold-1",
        )

    assert intent.intent_id == "1234567890"
    assert intent.qr_payload == "00020126PIX"
    assert intent.qr_code_base64 == "iVBOR"

    args, kwargs = request.call_args
    assert args == ("POST", "https://mp.test/v1/payments")
    body = kwargs["json"]
    assert body["transaction_amount"] == 50.0
    assert body["payment_method_id"] == "pix"
    assert body["payer"]["first_name"] == "Joao"
    assert body["payer"]["last_name"] == "da Silva"
    assert body["external_reference"] == "hold-1"
    assert body["notification_url"] == "https://shop.test/webhooks/mp"
    assert kwargs["headers"]["Authorization"] == "Bearer TEST-token"
    assert kwargs["headers"]["X-Idempotency-Key"] == "pix-hold-1"
    assert kwargs["timeout"] == 5


async def test_get_status(gateway):
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(200, {"id": 1, "status": "approved"}),
    ) as request:
        assert await gateway.get_status("1") == PaymentStatus.APPROVED

    args, kwargs = request.call_args
    assert args == ("GET", "https://mp.test/v1/payments/1")
    assert "X-Idempotency-Key" not in kwargs["headers"]


async def test_refund(gateway):
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(201, {"id": 99, "status": "approved"}),
    ) as request:
        await gateway.refund("INT1", "Barbeiro doente", Decimal("50.00"))

    args, kwargs = request.call_args
    assert args == ("POST", "https://mp.test/v1/payments/INT1/refunds")
    assert kwargs["json"] == {"amount": 50.0}
    assert kwargs["headers"]["X-Idempotency-Key"] == "refund-INT1-50.00"


async def test_retries_reuse_idempotency_key(gateway):
    payload = {"id": 1, "status": "pending"}
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(201, payload),
    ) as request:
        await gateway.create_intent(Decimal("50.00"), "Corte", {}, external_reference="hold-1")
        await gateway.create_intent(Decimal("50.00"), "Corte", {}, external_reference="hold-1")
        await gateway.refund("1", "Barbeiro doente", Decimal("50.00"))
        await gateway.refund("1", "Barbeiro doente", Decimal("50.00"))

    keys = [call.kwargs["headers"]["X-Idempotency-Key"] for call in request.call_args_list]
    assert keys == ["pix-hold-1", "pix-hold-1", "refund-1-50.00", "refund-1-50.00"]


async def test_provider_error_status(gateway):
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(400, {"message": "invalid"}),
    ):
        with pytest.raises(GatewayError, match="400"):
            await gateway.get_status("1")


async def test_connection_error(gateway):
    with patch(
        "app.services.payment_gateway.requests.request",
        side_effect=requests.exceptions.ConnectionError("refused"),
    ):
        with pytest.raises(GatewayError, match="Cannot connect"):
            await gateway.get_status("1")


async def test_missing_payment_id(gateway):
    with patch(
        "app.services.payment_gateway.requests.request",
        return_value=fake_response(201, {"status": "pending"}),
    ):
        with pytest.raises(GatewayError):
            await gateway.create_intent(Decimal("10.00"), "x", {})


async def test_missing_token():
    gateway = MercadoPagoGateway(access_token="", base_url="https://mp.test")

    with patch("app.services.payment_gateway.requests.request") as request:
        with pytest.raises(GatewayError):
            await gateway.get_status("1")

    request.assert_not_called()
