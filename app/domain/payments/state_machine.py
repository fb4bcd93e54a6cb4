"""
Payment State Machine

Applies verified payment events to invoices:

    pending -> paid        (gateway success or admin-confirmed cash)
    pending -> failed      (gateway reports the charge failed or was cancelled)
    pending -> cancelled   (admin action)

paid, failed and cancelled are terminal for payment events. Every transition is a
conditional UPDATE on the current status, so a webhook and a poller cycle racing
on the same invoice cannot both win; only the winner notifies the participant.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from ...models_invoice import Invoice
from ...services.notification_service import (
    INVOICE_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    NotificationPublisher,
)
from ...services.robokassa_service import PaymentGateway
from ...utils.clock import utcnow
from ...utils.money import to_minor_units
from .exceptions import (
    ConcurrentTransitionError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentIntegrityError,
)
from .repository import InvoiceRepository
from .schemas import PaymentEventStatus

logger = logging.getLogger(__name__)

CASH_OPERATION_PREFIX = "cash:"


@dataclass
class TransitionOutcome:
    invoice: Invoice
    applied: bool  # False for replays that changed nothing


def payload_fingerprint(*parts: object) -> str:
    """Short hash of an event for log correlation without logging raw payloads"""
    return hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()[:16]


class PaymentStateMachine:
    def __init__(
        self,
        repository: InvoiceRepository,
        notifier: NotificationPublisher,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.repository = repository
        self.notifier = notifier
        self.gateway = gateway  # issues the settlement receipt after online payments

    def _load(self, invoice_id: str) -> Invoice:
        invoice = self.repository.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def _check_amount(self, invoice: Invoice, operation_id: str, claimed_amount) -> None:
        try:
            matches = to_minor_units(claimed_amount) == to_minor_units(invoice.amount)
        except ValueError:
            matches = False
        if not matches:
            fingerprint = payload_fingerprint(invoice.id, operation_id, claimed_amount)
            logger.error(
                f"🚨 INTEGRITY: amount mismatch on invoice {invoice.id} "
                f"(operation={operation_id}, claimed={claimed_amount}, stored={invoice.amount}, event={fingerprint})"
            )
            raise PaymentIntegrityError(
                f"Claimed amount {claimed_amount} does not match invoice amount {invoice.amount}",
                invoice_id=invoice.id,
                operation_id=operation_id,
            )

    def _resolve_terminal(self, invoice: Invoice, operation_id: str, status: PaymentEventStatus) -> TransitionOutcome:
        """Outcome for an event that reaches an invoice no longer pending"""
        if invoice.status == "paid":
            if status == PaymentEventStatus.SUCCESS and invoice.operation_id == operation_id:
                logger.info(f"🔁 Replay of operation {operation_id} on paid invoice {invoice.id}; no change")
                return TransitionOutcome(invoice=invoice, applied=False)
            if status == PaymentEventStatus.SUCCESS:
                logger.error(
                    f"🚨 INTEGRITY: invoice {invoice.id} already paid by operation {invoice.operation_id}, "
                    f"got success for operation {operation_id}"
                )
                raise PaymentIntegrityError(
                    f"Invoice already paid by a different operation ({invoice.operation_id})",
                    invoice_id=invoice.id,
                    operation_id=operation_id,
                )

        if (
            invoice.status == "failed"
            and status == PaymentEventStatus.FAILED
            and invoice.operation_id == operation_id
        ):
            logger.info(f"🔁 Replay of failure {operation_id} on invoice {invoice.id}; no change")
            return TransitionOutcome(invoice=invoice, applied=False)

        raise InvalidTransitionError(
            f"Cannot apply {status.value} event to {invoice.status} invoice",
            invoice_id=invoice.id,
            operation_id=operation_id,
            current_status=invoice.status,
        )

    async def apply_payment_event(
        self,
        invoice_id: str,
        operation_id: str,
        claimed_amount: Optional[Union[Decimal, str]],
        status: Union[PaymentEventStatus, str],
        payment_method: Optional[str] = None,
        op_key: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        Apply one gateway event to an invoice.

        Raises InvoiceNotFoundError, PaymentIntegrityError (amount mismatch or a
        different operation already paid the invoice) or InvalidTransitionError.
        A replay of an already-applied operation returns applied=False.
        """
        status = PaymentEventStatus(status)
        operation_id = str(operation_id)
        invoice = self._load(invoice_id)

        if invoice.status != "pending":
            return self._resolve_terminal(invoice, operation_id, status)

        if status == PaymentEventStatus.SUCCESS or claimed_amount is not None:
            self._check_amount(invoice, operation_id, claimed_amount)

        if status == PaymentEventStatus.SUCCESS:
            next_status = "paid"
            fields = {
                "operation_id": operation_id,
                "payment_method": payment_method or invoice.payment_method or "card",
                "paid_at": utcnow(),
            }
            if op_key:
                fields["op_key"] = op_key
        else:
            next_status = "failed"
            fields = {"operation_id": operation_id}

        if not self.repository.compare_and_set_status(invoice_id, "pending", next_status, fields):
            current = self._load(invoice_id)
            logger.warning(
                f"⚠️ Lost transition race on invoice {invoice_id} (operation={operation_id}, now={current.status})"
            )
            if current.status != "pending":
                try:
                    return self._resolve_terminal(current, operation_id, status)
                except InvalidTransitionError as e:
                    raise ConcurrentTransitionError(
                        e.message, invoice_id=invoice_id, operation_id=operation_id, current_status=current.status
                    ) from e
            raise ConcurrentTransitionError(
                "Invoice changed during transition", invoice_id=invoice_id, operation_id=operation_id
            )

        invoice = self._load(invoice_id)
        event_type = PAYMENT_SUCCESS if next_status == "paid" else PAYMENT_FAILED
        if next_status == "paid":
            logger.info(f"✅ Invoice {invoice_id} paid (operation={operation_id}, method={invoice.payment_method})")
        else:
            logger.info(f"❌ Invoice {invoice_id} payment failed (operation={operation_id})")
        self.notifier.publish(invoice.participant_id, event_type, self._payload(invoice))
        if next_status == "paid" and not operation_id.startswith(CASH_OPERATION_PREFIX):
            await self._attach_second_receipt(invoice)
        return TransitionOutcome(invoice=invoice, applied=True)

    async def confirm_cash_payment(self, invoice_id: str) -> TransitionOutcome:
        """Admin-confirmed cash payment at the workshop"""
        invoice = self._load(invoice_id)
        operation_id = f"{CASH_OPERATION_PREFIX}{uuid.uuid4().hex}"
        return await self.apply_payment_event(
            invoice_id, operation_id, invoice.amount, PaymentEventStatus.SUCCESS, payment_method="cash"
        )

    async def cancel(self, invoice_id: str) -> TransitionOutcome:
        invoice = self._load(invoice_id)
        if invoice.status == "cancelled":
            return TransitionOutcome(invoice=invoice, applied=False)
        if invoice.status != "pending" or not self.repository.compare_and_set_status(
            invoice_id, "pending", "cancelled"
        ):
            current = self._load(invoice_id)
            raise InvalidTransitionError(
                f"Only pending invoices can be cancelled (status={current.status})",
                invoice_id=invoice_id,
                current_status=current.status,
            )

        invoice = self._load(invoice_id)
        logger.info(f"🚫 Invoice {invoice_id} cancelled")
        self.notifier.publish(invoice.participant_id, INVOICE_CANCELLED, self._payload(invoice))
        return TransitionOutcome(invoice=invoice, applied=True)

    async def _attach_second_receipt(self, invoice: Invoice) -> None:
        """Best effort: a fiscal failure is logged and never undoes the payment"""
        if self.gateway is None or invoice.gateway_invoice_id is None:
            return
        try:
            await self.gateway.create_second_receipt(invoice)
        except Exception as e:
            logger.error(f"❌ Second receipt for invoice {invoice.id} failed: {e}")

    @staticmethod
    def _payload(invoice: Invoice) -> dict:
        return {
            "invoice_id": invoice.id,
            "master_class_id": invoice.master_class_id,
            "status": invoice.status,
            "amount": str(invoice.amount),
            "payment_method": invoice.payment_method,
        }
