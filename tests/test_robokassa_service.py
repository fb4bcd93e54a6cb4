import asyncio
import base64
import hashlib
import json
from dataclasses import replace
from decimal import Decimal
from urllib.parse import parse_qs, unquote, urlparse

import httpx
import pytest
from jose import jwt as jose_jwt

from app.domain.payments.exceptions import GatewayError, GatewayUnavailableError
from app.models_invoice import Invoice
from app.services.robokassa_service import RobokassaClient

OP_STATE_OK = """<?xml version="1.0" encoding="utf-8"?>
<OperationStateResponse xmlns="http://merchant.roboxchange.com/WebService/">
  <Result><Code>0</Code></Result>
  <State><Code>100</Code><RequestDate>2026-10-19T10:00:00+03:00</RequestDate><StateDate>2026-10-19T10:01:00+03:00</StateDate></State>
  <Info>
    <IncCurrLabel>BankCardPSR</IncCurrLabel>
    <IncSum>750.000000</IncSum>
    <PaymentMethod><Code>BankCard</Code><Description>Банковская карта</Description></PaymentMethod>
    <OutCurrLabel>RUB</OutCurrLabel>
    <OutSum>750.000000</OutSum>
    <OpKey>OP-KEY-123</OpKey>
  </Info>
</OperationStateResponse>"""

OP_STATE_NOT_FOUND = """<OperationStateResponse xmlns="http://merchant.roboxchange.com/WebService/">
  <Result><Code>3</Code><Description>Operation not found</Description></Result>
</OperationStateResponse>"""


def make_client(settings, handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RobokassaClient(settings, http_client=http_client)


def sample_invoice(**overrides):
    fields = dict(
        id="inv-1",
        participant_id="parent-1",
        master_class_id="mc-42",
        amount=Decimal("750"),
        description="Восковые ручки",
        gateway_invoice_id=17,
        line_items=[],
    )
    fields.update(overrides)
    return Invoice(**fields)


class TestPaymentLink:
    def test_link_is_signed_with_first_password(self, settings):
        client = make_client(settings, lambda request: httpx.Response(500))
        link = client.create_payment_link(sample_invoice())

        query = parse_qs(urlparse(link.url).query)
        assert link.url.startswith("https://auth.robokassa.ru/Merchant/Index.aspx?")
        assert query["OutSum"] == ["750.00"]
        assert query["InvId"] == ["17"]
        assert query["Shp_invoice_id"] == ["inv-1"]
        assert query["IsTest"] == ["1"]
        expected = hashlib.md5(b"waxhands:750.00:17:first-password:Shp_invoice_id=inv-1").hexdigest().upper()
        assert query["SignatureValue"] == [expected]

    def test_receipt_is_included_in_signature(self, settings):
        client = make_client(settings, lambda request: httpx.Response(500))
        invoice = sample_invoice(line_items=[{"name": "Ручка", "quantity": 2, "cost": "375.00", "tax": "none"}])
        link = client.create_payment_link(invoice)

        query = parse_qs(urlparse(link.url).query)
        receipt_param = query["Receipt"][0]
        receipt = json.loads(unquote(receipt_param))
        assert receipt["items"][0]["sum"] == 750.0
        base = f"waxhands:750.00:17:{receipt_param}:first-password:Shp_invoice_id=inv-1"
        assert query["SignatureValue"] == [hashlib.md5(base.encode("utf-8")).hexdigest().upper()]

    def test_requires_gateway_invoice_id(self, settings):
        client = make_client(settings, lambda request: httpx.Response(500))
        with pytest.raises(ValueError):
            client.create_payment_link(sample_invoice(gateway_invoice_id=None))


class TestOperationStatus:
    def test_parses_successful_operation(self, settings):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, text=OP_STATE_OK)

        state = asyncio.run(make_client(settings, handler).check_operation_status(17))

        assert state.found is True
        assert state.is_success is True
        assert state.out_sum == Decimal("750")
        assert state.op_key == "OP-KEY-123"
        assert state.payment_method == "BankCard"
        assert seen["params"]["InvoiceID"] == "17"
        assert seen["params"]["Signature"] == hashlib.md5(b"waxhands:17:second-password").hexdigest().upper()

    def test_not_found(self, settings):
        state = asyncio.run(
            make_client(settings, lambda r: httpx.Response(200, text=OP_STATE_NOT_FOUND)).check_operation_status(99)
        )
        assert state.found is False
        assert state.is_success is False

    def test_gateway_error_code(self, settings):
        body = OP_STATE_NOT_FOUND.replace("<Code>3</Code>", "<Code>1</Code>")
        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(make_client(settings, lambda r: httpx.Response(200, text=body)).check_operation_status(1))
        assert exc_info.value.retryable is False

    @pytest.mark.parametrize(
        "handler",
        [
            lambda r: httpx.Response(503, text="busy"),
            lambda r: httpx.Response(200, text="<not xml"),
        ],
    )
    def test_transient_failures(self, settings, handler):
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, handler).check_operation_status(17))

    def test_malformed_result_code_is_transient(self, settings):
        body = OP_STATE_NOT_FOUND.replace("<Code>3</Code>", "<Code>x</Code>")
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, lambda r: httpx.Response(200, text=body)).check_operation_status(17))

    def test_malformed_state_code_is_transient(self, settings):
        body = OP_STATE_OK.replace("<Code>100</Code>", "<Code>done</Code>")
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, lambda r: httpx.Response(200, text=body)).check_operation_status(17))

    def test_timeout_is_transient(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnavailableError) as exc_info:
            asyncio.run(make_client(settings, handler).check_operation_status(17))
        assert exc_info.value.retryable is True

    def test_connection_error_is_transient(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, handler).check_operation_status(17))


class TestRefunds:
    def test_refund_request_is_jwt_signed_with_third_password(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["content_type"] = request.headers["content-type"]
            seen["token"] = request.content.decode()
            return httpx.Response(200, json={"success": True, "message": None, "requestId": "req-1"})

        items = [{"Name": "Ручка", "Quantity": 1, "Cost": 750.0, "Tax": "none"}]
        result = asyncio.run(make_client(settings, handler).create_refund("OP-KEY-123", Decimal("750.00"), items))

        assert result.accepted is True
        assert result.request_id == "req-1"
        assert seen["url"] == "https://services.robokassa.ru/RefundService/Refund/Create"
        assert seen["content_type"] == "application/jwt"
        payload = jose_jwt.decode(seen["token"], "third-password", algorithms=["HS256"])
        assert payload == {"OpKey": "OP-KEY-123", "RefundSum": 750.0, "InvoiceItems": items}

    def test_explicit_rejection(self, settings):
        handler = lambda r: httpx.Response(400, json={"success": False, "message": "Insufficient balance"})  # noqa: E731
        result = asyncio.run(make_client(settings, handler).create_refund("k", Decimal("1"), []))
        assert result.accepted is False
        assert result.message == "Insufficient balance"

    def test_unreadable_refund_response_is_transient(self, settings):
        handler = lambda r: httpx.Response(200, text="<html>oops</html>")  # noqa: E731
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, handler).create_refund("k", Decimal("1"), []))

    def test_refund_state(self, settings):
        def handler(request):
            assert request.url.params["id"] == "req-1"
            return httpx.Response(200, json={"requestId": "req-1", "amount": 750, "label": "finished"})

        state = asyncio.run(make_client(settings, handler).get_refund_state("req-1"))

        assert state.label == "finished"
        assert state.amount == Decimal("750")

    def test_refund_state_error_message(self, settings):
        handler = lambda r: httpx.Response(200, json={"message": "Refund request not found"})  # noqa: E731
        with pytest.raises(GatewayError):
            asyncio.run(make_client(settings, handler).get_refund_state("missing"))


class TestSecondReceipt:
    def test_attach_request_is_signed_with_first_password(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"ResultCode": "0", "ResultDescription": "ok"})

        invoice = sample_invoice(line_items=[{"name": "Ручка", "quantity": 2, "cost": "375.00", "tax": "none"}])
        assert asyncio.run(make_client(settings, handler).create_second_receipt(invoice)) is True

        assert seen["url"] == "https://ws.roboxchange.com/RoboFiscal/Receipt/Attach"
        encoded, signature = seen["body"].split(".")
        assert "=" not in encoded and "=" not in signature
        receipt = json.loads(base64.b64decode(encoded + "=" * (-len(encoded) % 4)).decode("utf-8"))
        assert receipt["originId"] == "17"
        assert receipt["total"] == 750.0
        assert receipt["payments"] == [{"type": 2, "sum": 750.0}]
        assert receipt["items"][0]["sum"] == 750.0
        assert receipt["items"][0]["payment_method"] == "full_payment"
        expected = hashlib.md5(f"{encoded}first-password".encode()).hexdigest()
        assert base64.b64decode(signature + "=" * (-len(signature) % 4)).decode() == expected

    def test_refused_receipt(self, settings):
        handler = lambda r: httpx.Response(200, json={"ResultCode": "1", "ResultDescription": "bad"})  # noqa: E731
        assert asyncio.run(make_client(settings, handler).create_second_receipt(sample_invoice())) is False

    def test_disabled_receipts_skip_the_call(self, settings):
        def handler(request):
            raise AssertionError("no request expected")

        client = make_client(replace(settings, second_receipt=False), handler)
        assert asyncio.run(client.create_second_receipt(sample_invoice())) is False

    def test_outage_is_transient(self, settings):
        handler = lambda r: httpx.Response(502)  # noqa: E731
        with pytest.raises(GatewayUnavailableError):
            asyncio.run(make_client(settings, handler).create_second_receipt(sample_invoice()))
