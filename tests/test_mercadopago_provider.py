import pytest
from decimal import Decimal
from unittest.mock import Mock

import requests

from estate_billing.errors import ConfigurationError, ConflictError, ProviderError, ValidationError
from estate_billing.providers import MercadoPagoProvider, PayerIdentity, PaymentMethod

VALID_CPF = "529.982.247-25"
VALID_CNPJ = "11.222.333/0001-81"


def _response(status_code=200, body=None):
    response = Mock()
    response.status_code = status_code
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body if body is not None else {}
    return response


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def provider(session):
    return MercadoPagoProvider(
        "TEST-mock-token",
        notification_url="https://billing.example.com/webhooks/mercadopago",
        session=session,
    )


def _payment_body(**overrides):
    body = {
        "id": 1234567890,
        "status": "pending",
        "status_detail": "pending_waiting_transfer",
        "transaction_amount": 150.0,
        "date_created": "2024-05-01T12:00:00.000-04:00",
        "date_approved": None,
        "point_of_interaction": {
            "transaction_data": {"qr_code": "00020126...", "qr_code_base64": "iVBORw0..."}
        },
    }
    body.update(overrides)
    return body


def test_missing_access_token_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        MercadoPagoProvider("")


def test_session_is_authenticated(provider, session):
    assert session.headers["Authorization"] == "Bearer TEST-mock-token"


def test_pix_payment_for_individual(provider, session):
    """Test PIX payment sends a CPF identification and returns the QR code"""
    session.request.return_value = _response(201, _payment_body())
    payer = PayerIdentity(email="comprador@example.com", tax_id=VALID_CPF)

    result = provider.create_one_off_payment(Decimal("150.00"), "Taxa", payer, PaymentMethod.PIX)

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://api.mercadopago.com/v1/payments"
    assert kwargs["json"]["payment_method_id"] == "pix"
    assert kwargs["json"]["payer"]["identification"] == {"type": "CPF", "number": "52998224725"}
    assert kwargs["json"]["notification_url"] == "https://billing.example.com/webhooks/mercadopago"
    assert kwargs["headers"]["X-Idempotency-Key"]
    assert kwargs["timeout"] == 5.0

    assert result.id == "1234567890"
    assert result.status == "pending"
    assert result.amount == Decimal("150.0")
    assert result.provider_specific_extras["qr_code"] == "00020126..."
    assert result.created_at.utcoffset() is not None


def test_pix_payment_for_company(provider, session):
    session.request.return_value = _response(201, _payment_body())
    payer = PayerIdentity(email="financeiro@example.com", tax_id=VALID_CNPJ)

    provider.create_one_off_payment(Decimal("150.00"), "Taxa", payer, PaymentMethod.PIX)

    identification = session.request.call_args.kwargs["json"]["payer"]["identification"]
    assert identification == {"type": "CNPJ", "number": "11222333000181"}


def test_each_payment_gets_its_own_idempotency_key(provider, session):
    session.request.return_value = _response(201, _payment_body())
    payer = PayerIdentity(email="comprador@example.com", tax_id=VALID_CPF)

    provider.create_one_off_payment(Decimal("1"), "a", payer, PaymentMethod.PIX)
    provider.create_one_off_payment(Decimal("1"), "b", payer, PaymentMethod.PIX)

    keys = [c.kwargs["headers"]["X-Idempotency-Key"] for c in session.request.call_args_list]
    assert keys[0] != keys[1]


def test_boleto_payment(provider, session):
    body = _payment_body(
        point_of_interaction=None,
        transaction_details={"external_resource_url": "https://mercadopago.test/boleto"},
    )
    session.request.return_value = _response(201, body)
    payer = PayerIdentity(email="comprador@example.com", tax_id=VALID_CPF, first_name="Ana", last_name="Souza")

    result = provider.create_one_off_payment(Decimal("99.90"), "Boleto", payer, PaymentMethod.BOLETO)

    payload = session.request.call_args.kwargs["json"]
    assert payload["payment_method_id"] == "bolbradesco"
    assert payload["payer"]["first_name"] == "Ana"
    assert result.provider_specific_extras == {"boleto_url": "https://mercadopago.test/boleto"}


def test_card_payment_uses_token_and_brand(provider, session):
    session.request.return_value = _response(201, _payment_body(status="approved", point_of_interaction=None))
    payer = PayerIdentity(email="comprador@example.com", card_token="tok_123", card_brand="master", installments=3)

    provider.create_one_off_payment(Decimal("300"), "Plano anual", payer, PaymentMethod.CREDIT_CARD)

    payload = session.request.call_args.kwargs["json"]
    assert payload["token"] == "tok_123"
    assert payload["payment_method_id"] == "master"
    assert payload["installments"] == 3
    assert "identification" not in payload["payer"]


def test_card_payment_without_brand_is_rejected(provider, session):
    payer = PayerIdentity(email="comprador@example.com", card_token="tok_123")

    with pytest.raises(ValidationError):
        provider.create_one_off_payment(Decimal("10"), "x", payer, PaymentMethod.CREDIT_CARD)

    session.request.assert_not_called()


def test_invalid_tax_id_is_rejected_before_the_call(provider, session):
    payer = PayerIdentity(email="comprador@example.com", tax_id="111.111.111-11")

    with pytest.raises(ValidationError):
        provider.create_one_off_payment(Decimal("10"), "x", payer, PaymentMethod.PIX)

    session.request.assert_not_called()


def test_provider_rejection_is_a_provider_error(provider, session):
    session.request.return_value = _response(
        400, {"message": "invalid payer email", "error": "bad_request", "cause": []}
    )
    payer = PayerIdentity(email="comprador@example.com", tax_id=VALID_CPF)

    with pytest.raises(ProviderError) as exc_info:
        provider.create_one_off_payment(Decimal("10"), "x", payer, PaymentMethod.PIX)

    assert exc_info.value.message == "invalid payer email"
    assert exc_info.value.details["http_status"] == 400
    assert exc_info.value.operation == "create_one_off_payment"


def test_network_failure_is_a_provider_error(provider, session):
    session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(ProviderError) as exc_info:
        provider.get_payment_status("1234567890")

    assert exc_info.value.provider == "mercadopago"


def test_get_payment_status(provider, session):
    session.request.return_value = _response(
        200, _payment_body(status="approved", status_detail="accredited", date_approved="2024-05-01T12:05:00Z")
    )

    result = provider.get_payment_status("1234567890")

    assert session.request.call_args.args == ("GET", "https://api.mercadopago.com/v1/payments/1234567890")
    assert result.status == "approved"
    assert result.status_detail == "accredited"
    assert result.approved_at is not None


def test_cancel_settled_payment_is_a_conflict(provider, session):
    session.request.return_value = _response(400, {"message": "Payment cannot be cancelled"})

    with pytest.raises(ConflictError):
        provider.cancel_payment("1234567890")

    assert session.request.call_args.kwargs["json"] == {"status": "cancelled"}


def test_create_preapproval(provider, session):
    session.request.return_value = _response(201, {
        "id": "2c938084",
        "status": "authorized",
        "next_payment_date": "2024-06-01T12:00:00.000-03:00",
        "auto_recurring": {"start_date": "2024-05-01T12:00:00.000-03:00"},
    })

    result = provider.create_subscription("pagador@example.com", "mp_plan_basic", metadata={"tenant_id": "t1"})

    payload = session.request.call_args.kwargs["json"]
    assert payload == {
        "preapproval_plan_id": "mp_plan_basic",
        "payer_email": "pagador@example.com",
        "external_reference": "t1",
    }
    assert result.status == "authorized"
    assert result.current_period_end is not None


def test_cancel_at_period_end_is_not_supported(provider, session):
    with pytest.raises(ValidationError):
        provider.cancel_subscription("2c938084", immediate=False)

    session.request.assert_not_called()


def test_create_preference(provider, session):
    session.request.return_value = _response(201, {
        "id": "123456-abc",
        "init_point": "https://www.mercadopago.com.br/checkout/v1/redirect?pref_id=123456-abc",
    })
    items = [{"title": "Destaque de anúncio", "quantity": 1, "unit_price": 49.9, "currency_id": "BRL"}]

    result = provider.create_preference(
        items,
        metadata={"tenant_id": "t1"},
        back_urls={"success": "https://app.example.com/ok"},
    )

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://api.mercadopago.com/checkout/preferences"
    assert kwargs["headers"]["X-Idempotency-Key"]
    assert kwargs["json"] == {
        "items": items,
        "metadata": {"tenant_id": "t1"},
        "back_urls": {"success": "https://app.example.com/ok"},
        "auto_return": "approved",
        "notification_url": "https://billing.example.com/webhooks/mercadopago",
    }
    assert result["id"] == "123456-abc"
    assert result["init_point"].endswith("pref_id=123456-abc")


def test_create_preference_rejected(provider, session):
    session.request.return_value = _response(400, {"message": "invalid items", "error": "bad_request"})

    with pytest.raises(ProviderError):
        provider.create_preference([{"title": "x", "quantity": 1, "unit_price": 0}])
