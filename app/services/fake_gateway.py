"""Configurable in-memory Robokassa stand-in for development and tests.

No network calls. Operation states, refund outcomes and failures are set at
runtime, and every call is recorded in `calls`.
"""

import asyncio
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from ..models_invoice import Invoice
from ..utils.money import format_out_sum
from .robokassa_service import (
    OperationState,
    PaymentGateway,
    PaymentLink,
    RefundState,
    RefundSubmission,
)


class FakeRobokassaGateway(PaymentGateway):
    def __init__(self) -> None:
        self.operation_states: dict[int, OperationState] = {}
        self.status_errors: dict[int, Exception] = {}
        self.refund_accepts: bool = True
        self.refund_message: str = "Refund rejected"
        self.refund_error: Optional[Exception] = None
        self.refund_states: dict[str, RefundState] = {}
        self.refund_state_errors: dict[str, Exception] = {}
        self.status_gate: Optional[asyncio.Event] = None  # blocks status checks until set
        self.second_receipt_ok: bool = True
        self.second_receipt_error: Optional[Exception] = None
        self.calls: list[dict] = []

    def set_operation_state(
        self,
        inv_id: int,
        state_code: int,
        out_sum: Optional[Decimal] = None,
        op_key: Optional[str] = None,
        payment_method: Optional[str] = "BankCard",
    ) -> None:
        self.operation_states[inv_id] = OperationState(
            inv_id=inv_id,
            found=True,
            state_code=state_code,
            out_sum=out_sum,
            op_key=op_key,
            payment_method=payment_method,
        )

    def configure_refunds(self, accepts: bool, message: str = "Refund rejected") -> None:
        self.refund_accepts = accepts
        self.refund_message = message

    def create_payment_link(self, invoice: Invoice) -> PaymentLink:
        self.calls.append({"method": "create_payment_link", "invoice_id": invoice.id})
        out_sum = format_out_sum(invoice.amount)
        return PaymentLink(
            url=f"https://fake.robokassa.local/pay?InvId={invoice.gateway_invoice_id}&OutSum={out_sum}",
            inv_id=invoice.gateway_invoice_id,
            out_sum=out_sum,
        )

    async def check_operation_status(self, inv_id: int) -> OperationState:
        self.calls.append({"method": "check_operation_status", "inv_id": inv_id})
        if self.status_gate is not None:
            await self.status_gate.wait()
        if inv_id in self.status_errors:
            raise self.status_errors[inv_id]
        return self.operation_states.get(inv_id, OperationState(inv_id=inv_id, found=False))

    async def create_refund(self, op_key: str, amount: Decimal, items: list[dict]) -> RefundSubmission:
        self.calls.append({"method": "create_refund", "op_key": op_key, "amount": amount, "items": items})
        if self.refund_error is not None:
            raise self.refund_error
        if not self.refund_accepts:
            return RefundSubmission(accepted=False, message=self.refund_message)

        request_id = f"fake_ref_{uuid4().hex[:12]}"
        self.refund_states[request_id] = RefundState(request_id=request_id, label="processing", amount=amount)
        return RefundSubmission(accepted=True, request_id=request_id)

    async def get_refund_state(self, request_id: str) -> RefundState:
        self.calls.append({"method": "get_refund_state", "request_id": request_id})
        if request_id in self.refund_state_errors:
            raise self.refund_state_errors[request_id]
        return self.refund_states.get(request_id, RefundState(request_id=request_id, label="processing"))

    async def create_second_receipt(self, invoice: Invoice) -> bool:
        self.calls.append({"method": "create_second_receipt", "invoice_id": invoice.id})
        if self.second_receipt_error is not None:
            raise self.second_receipt_error
        return self.second_receipt_ok

    def finish_refund(self, request_id: str, label: str = "finished") -> None:
        current = self.refund_states.get(request_id)
        self.refund_states[request_id] = RefundState(
            request_id=request_id, label=label, amount=current.amount if current else None
        )

    def method_calls(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method]
