"""Refund service - eligibility window, gateway refunds and refund status reconciliation"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from ...models_invoice import Invoice
from ...services.notification_service import (
    REFUND_COMPLETED,
    REFUND_PROCESSING,
    REFUND_REJECTED,
    REFUND_REQUESTED,
    NotificationPublisher,
)
from ...services.robokassa_service import (
    REFUND_CANCELED,
    REFUND_FINISHED,
    PaymentGateway,
    build_refund_items,
)
from ...utils.clock import utcnow
from ...utils.money import quantize
from .exceptions import GatewayError, GatewayUnavailableError, InvoiceNotFoundError, RefundNotAllowedError
from .repository import InvoiceRepository

logger = logging.getLogger(__name__)

REFUNDABLE_STATES = ("none", "rejected")

BLOCKED_REFUND_REASONS = {
    "requested": "refund already requested",
    "processing": "refund already in progress",
    "completed": "refund already completed",
}


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class RefundRequest:
    invoice_id: str
    refund_status: str
    amount: Optional[Decimal] = None
    request_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class RefundStatus:
    invoice_id: str
    request_id: str
    refund_status: str
    gateway_label: str
    amount: Optional[Decimal] = None


class RefundCoordinator:
    def __init__(
        self,
        repository: InvoiceRepository,
        gateway: PaymentGateway,
        notifier: NotificationPublisher,
        cutoff: timedelta,
        auto_refund: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.gateway = gateway
        self.notifier = notifier
        self.cutoff = cutoff
        self.auto_refund = auto_refund
        self.clock = clock

    def _load(self, invoice_id: str) -> Invoice:
        invoice = self.repository.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def _evaluate(self, invoice: Invoice) -> Eligibility:
        if invoice.status != "paid":
            return Eligibility(eligible=False, reason="invoice not paid")
        if invoice.refund_status not in REFUNDABLE_STATES:
            return Eligibility(eligible=False, reason=BLOCKED_REFUND_REASONS.get(invoice.refund_status))
        # Strictly more than the cutoff must remain before the workshop starts
        if invoice.workshop_date - self.clock() <= self.cutoff:
            return Eligibility(eligible=False, reason="within cutoff window")
        return Eligibility(eligible=True)

    def check_eligibility(self, invoice_id: str) -> Eligibility:
        """Side-effect free; safe to call repeatedly"""
        return self._evaluate(self._load(invoice_id))

    async def initiate_refund(
        self,
        invoice_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
        email: Optional[str] = None,
    ) -> RefundRequest:
        """
        Claim the refund, then submit it to the gateway.

        Raises RefundNotAllowedError for business rejections and GatewayError
        (GatewayUnavailableError when retryable) when the gateway call fails;
        in the latter case the refund sub-state is restored to what it was.
        """
        invoice = self._load(invoice_id)
        eligibility = self._evaluate(invoice)
        if not eligibility.eligible:
            logger.info(f"🚫 Refund refused for invoice {invoice_id}: {eligibility.reason}")
            raise RefundNotAllowedError(eligibility.reason, invoice_id=invoice_id)

        refund_amount = quantize(amount if amount is not None else invoice.amount)
        if refund_amount <= 0 or refund_amount > invoice.amount:
            raise RefundNotAllowedError("refund amount exceeds invoice amount", invoice_id=invoice_id)

        previous_state = invoice.refund_status
        previous_fields = {
            "refund_reason": invoice.refund_reason,
            "refund_amount": invoice.refund_amount,
            "refund_email": invoice.refund_email,
            "refund_request_id": invoice.refund_request_id,
            "refund_message": invoice.refund_message,
            "refund_requested_at": invoice.refund_requested_at,
        }
        claimed = self.repository.compare_and_set_refund_status(
            invoice_id,
            (previous_state,),
            "requested",
            {
                "refund_reason": reason,
                "refund_amount": refund_amount,
                "refund_email": email,
                "refund_request_id": None,
                "refund_message": None,
                "refund_requested_at": self.clock(),
            },
        )
        if not claimed:
            raise RefundNotAllowedError("refund already requested", invoice_id=invoice_id)

        invoice = self._load(invoice_id)
        if not self.auto_refund or invoice.gateway_invoice_id is None:
            # Held for an operator: auto refunds are off or the invoice was paid offline
            logger.info(f"📝 Refund for invoice {invoice_id} saved for manual processing ({refund_amount})")
            self.notifier.publish(invoice.participant_id, REFUND_REQUESTED, self._payload(invoice))
            return self._request_from(invoice)

        return await self._submit(invoice, previous_state, previous_fields)

    async def approve_refund(self, invoice_id: str) -> RefundRequest:
        """Submit a refund an operator was holding in 'requested'"""
        invoice = self._load(invoice_id)
        if invoice.refund_status != "requested":
            raise RefundNotAllowedError("no refund awaiting approval", invoice_id=invoice_id)
        if invoice.gateway_invoice_id is None:
            raise RefundNotAllowedError("invoice was not paid online; refund it manually", invoice_id=invoice_id)
        return await self._submit(invoice, "requested", {})

    def mark_refund_completed(self, invoice_id: str) -> RefundRequest:
        """Operator confirms a refund made outside the gateway (cash)"""
        if not self.repository.compare_and_set_refund_status(
            invoice_id, ("requested",), "completed", {"refund_completed_at": self.clock()}
        ):
            raise RefundNotAllowedError("no refund awaiting approval", invoice_id=invoice_id)
        invoice = self._load(invoice_id)
        self.notifier.publish(invoice.participant_id, REFUND_COMPLETED, self._payload(invoice))
        return self._request_from(invoice)

    async def _resolve_op_key(self, invoice: Invoice) -> str:
        if invoice.op_key:
            return invoice.op_key
        state = await self.gateway.check_operation_status(invoice.gateway_invoice_id)
        if not state.found or not state.op_key:
            raise GatewayError(f"Gateway has no operation key for invoice {invoice.id}", invoice_id=invoice.id)
        self.repository.save_op_key(invoice.id, state.op_key)
        logger.info(f"🔑 Cached OpKey for invoice {invoice.id}")
        return state.op_key

    def _release_claim(self, invoice_id: str, previous_state: str, previous_fields: dict) -> None:
        """Put a freshly claimed refund back so the caller can retry"""
        if previous_state != "requested":
            self.repository.compare_and_set_refund_status(
                invoice_id, ("requested",), previous_state, previous_fields
            )

    async def _submit(self, invoice: Invoice, previous_state: str, previous_fields: dict) -> RefundRequest:
        invoice_id = invoice.id
        try:
            op_key = await self._resolve_op_key(invoice)
            submission = await self.gateway.create_refund(
                op_key, invoice.refund_amount, build_refund_items(invoice)
            )
        except Exception as e:
            self._release_claim(invoice_id, previous_state, previous_fields)
            if isinstance(e, GatewayError):
                logger.error(f"❌ Refund submission failed for invoice {invoice_id}: {e} (retryable={e.retryable})")
                raise
            logger.error(f"❌ Unexpected error submitting refund for invoice {invoice_id}: {e}", exc_info=True)
            raise GatewayUnavailableError(
                f"Refund submission failed: {e}", invoice_id=invoice_id
            ) from e

        if submission.accepted:
            self.repository.compare_and_set_refund_status(
                invoice_id, ("requested",), "processing", {"refund_request_id": submission.request_id}
            )
            event_type = REFUND_PROCESSING
            logger.info(f"💸 Refund for invoice {invoice_id} processing (requestId={submission.request_id})")
        else:
            self.repository.compare_and_set_refund_status(
                invoice_id, ("requested",), "rejected", {"refund_message": submission.message}
            )
            event_type = REFUND_REJECTED
            logger.warning(f"⚠️ Refund for invoice {invoice_id} rejected by gateway: {submission.message}")

        invoice = self._load(invoice_id)
        self.notifier.publish(invoice.participant_id, event_type, self._payload(invoice))
        return self._request_from(invoice)

    async def get_refund_status(self, request_id: str) -> RefundStatus:
        """Ask the gateway about a refund and fold a final answer into the invoice"""
        invoice = self.repository.get_by_refund_request_id(request_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"No invoice for refund request {request_id}")

        state = await self.gateway.get_refund_state(request_id)
        if invoice.refund_status == "processing":
            event_type = None
            if state.label == REFUND_FINISHED:
                if self.repository.compare_and_set_refund_status(
                    invoice.id, ("processing",), "completed", {"refund_completed_at": self.clock()}
                ):
                    event_type = REFUND_COMPLETED
                    logger.info(f"✅ Refund {request_id} completed for invoice {invoice.id}")
            elif state.label == REFUND_CANCELED:
                if self.repository.compare_and_set_refund_status(
                    invoice.id, ("processing",), "rejected", {"refund_message": "Refund canceled by gateway"}
                ):
                    event_type = REFUND_REJECTED
                    logger.warning(f"⚠️ Refund {request_id} canceled by gateway for invoice {invoice.id}")

            invoice = self._load(invoice.id)
            if event_type:
                self.notifier.publish(invoice.participant_id, event_type, self._payload(invoice))

        return RefundStatus(
            invoice_id=invoice.id,
            request_id=request_id,
            refund_status=invoice.refund_status,
            gateway_label=state.label,
            amount=state.amount,
        )

    @staticmethod
    def _request_from(invoice: Invoice) -> RefundRequest:
        return RefundRequest(
            invoice_id=invoice.id,
            refund_status=invoice.refund_status,
            amount=invoice.refund_amount,
            request_id=invoice.refund_request_id,
            message=invoice.refund_message,
        )

    @staticmethod
    def _payload(invoice: Invoice) -> dict:
        return {
            "invoice_id": invoice.id,
            "master_class_id": invoice.master_class_id,
            "refund_status": invoice.refund_status,
            "refund_amount": str(invoice.refund_amount) if invoice.refund_amount is not None else None,
            "message": invoice.refund_message,
        }
