"""
Robokassa Service
Outbound calls to Robokassa: payment links, operation status, refunds and
54-FZ settlement receipts.

The client is constructed with explicit settings and an optional httpx client,
so tests and alternative merchants never touch module-level state.
"""

import base64
import json
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx
from jose import jwt as jose_jwt

from ..config import RobokassaSettings
from ..domain.payments.exceptions import GatewayError, GatewayUnavailableError
from ..models_invoice import Invoice
from ..utils.money import format_out_sum, to_decimal
from ..webhook_security import SignatureVerifier

logger = logging.getLogger(__name__)

# OpStateExt state codes
STATE_INITIATED = 5
STATE_CANCELLED = 10
STATE_PROCESSING = 50
STATE_RETURNED = 60
STATE_SUSPENDED = 80
STATE_SUCCESS = 100

RESULT_OK = 0
RESULT_NOT_FOUND = 3

REFUND_FINISHED = "finished"
REFUND_PROCESSING = "processing"
REFUND_CANCELED = "canceled"


@dataclass(frozen=True)
class PaymentLink:
    url: str
    inv_id: int
    out_sum: str


@dataclass(frozen=True)
class OperationState:
    inv_id: int
    found: bool
    state_code: Optional[int] = None
    out_sum: Optional[Decimal] = None
    op_key: Optional[str] = None
    payment_method: Optional[str] = None
    state_date: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.found and self.state_code == STATE_SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.found and self.state_code in (STATE_CANCELLED, STATE_RETURNED)


@dataclass(frozen=True)
class RefundSubmission:
    accepted: bool
    request_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class RefundState:
    request_id: str
    label: str
    amount: Optional[Decimal] = None


class PaymentGateway(ABC):
    """Operations the payment core needs from the gateway"""

    @abstractmethod
    def create_payment_link(self, invoice: Invoice) -> PaymentLink: ...

    @abstractmethod
    async def check_operation_status(self, inv_id: int) -> OperationState: ...

    @abstractmethod
    async def create_refund(self, op_key: str, amount: Decimal, items: list[dict]) -> RefundSubmission: ...

    @abstractmethod
    async def get_refund_state(self, request_id: str) -> RefundState: ...

    @abstractmethod
    async def create_second_receipt(self, invoice: Invoice) -> bool: ...

    async def aclose(self) -> None:
        return None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, *path: str) -> Optional[str]:
    """Namespace-agnostic lookup of nested element text"""
    node = root
    for name in path:
        node = next((child for child in node if _local_name(child.tag) == name), None)
        if node is None:
            return None
    return (node.text or "").strip() or None


def build_receipt(invoice: Invoice) -> Optional[dict]:
    items = invoice.line_items or []
    if not items:
        return None
    return {
        "items": [
            {
                "name": item["name"][:128],
                "quantity": item.get("quantity", 1),
                "sum": float(to_decimal(item["cost"]) * item.get("quantity", 1)),
                "tax": item.get("tax", "none"),
                "payment_method": item.get("payment_method", "full_payment"),
                "payment_object": item.get("payment_object", "service"),
            }
            for item in items
        ]
    }


def build_refund_items(invoice: Invoice) -> list[dict]:
    return [
        {
            "Name": item["name"][:128],
            "Quantity": item.get("quantity", 1),
            "Cost": float(to_decimal(item["cost"])),
            "Tax": item.get("tax", "none"),
            "PaymentMethod": item.get("payment_method", "full_payment"),
            "PaymentObject": item.get("payment_object", "service"),
        }
        for item in (invoice.line_items or [])
    ]


def build_second_receipt(invoice: Invoice, settings: RobokassaSettings) -> dict:
    """Settlement receipt closing the prepayment once the workshop service is rendered"""
    items = invoice.line_items or [
        {"name": invoice.description or f"Мастер-класс {invoice.master_class_id}", "quantity": 1, "cost": invoice.amount}
    ]
    total = float(to_decimal(invoice.amount))
    return {
        "merchantId": settings.merchant_login,
        "id": f"receipt_{invoice.gateway_invoice_id}",
        "originId": str(invoice.gateway_invoice_id),
        "operation": "sell",
        "sno": settings.tax_system,
        "url": settings.site_url,
        "total": total,
        "items": [
            {
                "name": item["name"][:128],
                "quantity": item.get("quantity", 1),
                "sum": float(to_decimal(item["cost"]) * item.get("quantity", 1)),
                "tax": item.get("tax", "none"),
                "payment_method": "full_payment",
                "payment_object": item.get("payment_object", "service"),
            }
            for item in items
        ],
        "payments": [{"type": 2, "sum": total}],  # 2 = offset of the advance
        "vats": [{"type": "none", "sum": 0}],
    }


class RobokassaClient(PaymentGateway):
    """Robokassa merchant API client"""

    def __init__(
        self,
        settings: RobokassaSettings,
        verifier: Optional[SignatureVerifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.verifier = verifier or SignatureVerifier(settings)
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout_seconds))

        if not settings.is_configured():
            logger.warning("ROBOKASSA_MERCHANT_LOGIN / passwords not set; gateway calls will fail until configured")
        else:
            logger.info(f"Robokassa client initialized (merchant={settings.merchant_login}, test={settings.test_mode})")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.http.request(
                method, url, timeout=httpx.Timeout(self.settings.timeout_seconds), **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ Robokassa timeout: {method} {url}")
            raise GatewayUnavailableError(f"Gateway timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning(f"⚠️ Robokassa connection error: {method} {url}: {e}")
            raise GatewayUnavailableError(f"Gateway connection error: {e}") from e

        if response.status_code >= 500:
            logger.warning(f"⚠️ Robokassa HTTP {response.status_code}: {method} {url}")
            raise GatewayUnavailableError(f"Gateway returned HTTP {response.status_code}")
        return response

    def create_payment_link(self, invoice: Invoice) -> PaymentLink:
        if invoice.gateway_invoice_id is None:
            raise ValueError(f"Invoice {invoice.id} has no gateway InvId yet")

        out_sum = format_out_sum(invoice.amount)
        inv_id = str(invoice.gateway_invoice_id)
        shp = {"Shp_invoice_id": invoice.id}
        receipt = build_receipt(invoice)
        receipt_param = quote(json.dumps(receipt, ensure_ascii=False, separators=(",", ":"))) if receipt else None

        params = {
            "MerchantLogin": self.settings.merchant_login,
            "OutSum": out_sum,
            "InvId": inv_id,
            "Description": (invoice.description or f"Мастер-класс {invoice.master_class_id}")[:100],
            "SignatureValue": self.verifier.sign_payment_form(out_sum, inv_id, receipt_param, shp),
            "Culture": "ru",
            "Encoding": "utf-8",
        }
        if receipt_param:
            params["Receipt"] = receipt_param
        if self.settings.test_mode:
            params["IsTest"] = "1"
        params.update(shp)

        url = f"{self.settings.payment_url}?{urlencode(params)}"
        logger.info(f"🔗 Payment link created for invoice {invoice.id} (InvId={inv_id}, OutSum={out_sum})")
        return PaymentLink(url=url, inv_id=invoice.gateway_invoice_id, out_sum=out_sum)

    async def check_operation_status(self, inv_id: int) -> OperationState:
        params = {
            "MerchantLogin": self.settings.merchant_login,
            "InvoiceID": str(inv_id),
            "Signature": self.verifier.sign_status_query(str(inv_id)),
        }
        response = await self._request("GET", self.settings.status_url, params=params)
        if response.status_code != 200:
            raise GatewayError(f"OpStateExt returned HTTP {response.status_code}")

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise GatewayUnavailableError(f"Unreadable OpStateExt response: {e}") from e

        result_code = _find_text(root, "Result", "Code")
        if result_code is None:
            raise GatewayUnavailableError("OpStateExt response has no result code")
        try:
            result = int(result_code)
            state_code = _find_text(root, "State", "Code")
            state = int(state_code) if state_code else None
            out_sum = _find_text(root, "Info", "OutSum")
            amount = to_decimal(out_sum) if out_sum else None
        except ValueError as e:
            logger.warning(f"⚠️ Malformed OpStateExt response for InvId {inv_id}: {e}")
            raise GatewayUnavailableError(f"Malformed OpStateExt response: {e}") from e

        if result == RESULT_NOT_FOUND:
            return OperationState(inv_id=inv_id, found=False)
        if result != RESULT_OK:
            description = _find_text(root, "Result", "Description")
            raise GatewayError(f"OpStateExt error {result_code}: {description}")

        return OperationState(
            inv_id=inv_id,
            found=True,
            state_code=state,
            out_sum=amount,
            op_key=_find_text(root, "Info", "OpKey"),
            payment_method=_find_text(root, "Info", "PaymentMethod", "Code")
            or _find_text(root, "Info", "IncCurrLabel"),
            state_date=_find_text(root, "State", "StateDate"),
        )

    async def create_refund(self, op_key: str, amount: Decimal, items: list[dict]) -> RefundSubmission:
        payload: dict[str, Any] = {"OpKey": op_key, "RefundSum": float(amount)}
        if items:
            payload["InvoiceItems"] = items
        token = jose_jwt.encode(payload, self.verifier.refund_key, algorithm="HS256")

        response = await self._request(
            "POST",
            f"{self.settings.refund_base_url}/Refund/Create",
            content=token,
            headers={"Content-Type": "application/jwt"},
        )
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailableError(f"Unreadable refund response (HTTP {response.status_code})") from e
        if not isinstance(data, dict):
            raise GatewayUnavailableError("Unexpected refund response shape")

        if data.get("success") and data.get("requestId"):
            logger.info(f"💸 Refund accepted by Robokassa (requestId={data['requestId']})")
            return RefundSubmission(accepted=True, request_id=str(data["requestId"]))

        message = data.get("message") or f"Refund rejected (HTTP {response.status_code})"
        logger.warning(f"⚠️ Refund rejected by Robokassa: {message}")
        return RefundSubmission(accepted=False, message=message)

    async def get_refund_state(self, request_id: str) -> RefundState:
        response = await self._request(
            "GET", f"{self.settings.refund_base_url}/Refund/GetState", params={"id": request_id}
        )
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailableError(f"Unreadable refund state response (HTTP {response.status_code})") from e
        if not isinstance(data, dict):
            raise GatewayUnavailableError("Unexpected refund state response shape")

        if not data.get("label"):
            raise GatewayError(f"Refund state unavailable for {request_id}: {data.get('message')}")
        try:
            amount = to_decimal(data["amount"]) if data.get("amount") is not None else None
        except ValueError as e:
            raise GatewayUnavailableError(f"Malformed refund state amount: {e}") from e
        return RefundState(
            request_id=str(data.get("requestId") or request_id),
            label=str(data["label"]).lower(),
            amount=amount,
        )

    async def create_second_receipt(self, invoice: Invoice) -> bool:
        """Attach the 54-FZ settlement receipt to a paid invoice; False when disabled or refused"""
        if not self.settings.second_receipt:
            return False
        if invoice.gateway_invoice_id is None:
            raise ValueError(f"Invoice {invoice.id} was not paid through Robokassa")

        body = json.dumps(build_second_receipt(invoice, self.settings), ensure_ascii=False, separators=(",", ":"))
        encoded = base64.b64encode(body.encode("utf-8")).decode("ascii").rstrip("=")
        token = f"{encoded}.{self.verifier.sign_receipt_attach(encoded)}"

        response = await self._request(
            "POST",
            f"{self.settings.fiscal_base_url}/Attach",
            content=token,
            headers={"Content-Type": "text/plain"},
        )
        if response.status_code != 200:
            raise GatewayError(f"Receipt/Attach returned HTTP {response.status_code}", invoice_id=invoice.id)
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnavailableError("Unreadable Receipt/Attach response", invoice_id=invoice.id) from e
        if not isinstance(data, dict):
            raise GatewayUnavailableError("Unexpected Receipt/Attach response shape", invoice_id=invoice.id)

        if str(data.get("ResultCode")) == "0":
            logger.info(f"🧾 Second receipt attached for invoice {invoice.id} (InvId={invoice.gateway_invoice_id})")
            return True
        logger.warning(
            f"⚠️ Second receipt refused for invoice {invoice.id}: {data.get('ResultDescription') or data.get('ResultCode')}"
        )
        return False
