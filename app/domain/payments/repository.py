"""Invoice repository - the only writer of invoice rows"""

import logging
from collections.abc import Iterable
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models_invoice import PAID_IMMUTABLE_FIELDS, GatewayInvoiceNumber, ImmutableInvoiceError, Invoice
from ...utils.clock import utcnow

logger = logging.getLogger(__name__)


class InvoiceRepository:
    """Invoice store bound to one session. Status changes go through compare-and-set only."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Invoice:
        invoice = Invoice(status="pending", refund_status="none", **fields)
        self.db.add(invoice)
        self.db.commit()
        self.db.refresh(invoice)
        logger.info(f"✅ Invoice {invoice.id} created for participant {invoice.participant_id}")
        return invoice

    def get(self, invoice_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def get_by_gateway_invoice_id(self, inv_id: int) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.gateway_invoice_id == inv_id).first()

    def get_by_refund_request_id(self, request_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.refund_request_id == request_id).first()

    def list_for_participant(self, participant_id: str) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.participant_id == participant_id)
            .order_by(Invoice.created_at.desc())
            .all()
        )

    @staticmethod
    def _reject_frozen_fields(invoice_id: str, fields: dict[str, Any]) -> None:
        """Paid rows keep their amount and operation_id; Core UPDATEs never reach the ORM guard"""
        for field in PAID_IMMUTABLE_FIELDS:
            if field in fields:
                logger.error(f"❌ Blocked write of {field} on paid invoice {invoice_id}")
                raise ImmutableInvoiceError(invoice_id, field)

    def compare_and_set_status(
        self, invoice_id: str, expected: str, next_status: str, fields: Optional[dict[str, Any]] = None
    ) -> bool:
        """
        Atomically move an invoice from `expected` to `next_status`.

        Returns True when this call won the transition. The row is matched on
        both id and current status, so a concurrent writer makes this a no-op.
        """
        if expected == "paid":
            self._reject_frozen_fields(invoice_id, fields or {})
        values = dict(fields or {})
        values["status"] = next_status
        values["updated_at"] = utcnow()
        try:
            result = self.db.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id, Invoice.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        won = result.rowcount == 1
        if won:
            logger.info(f"🔄 Invoice {invoice_id}: {expected} -> {next_status}")
        return won

    def compare_and_set_refund_status(
        self,
        invoice_id: str,
        expected: Iterable[str],
        next_status: str,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Atomically advance the refund sub-state; only ever matches paid invoices"""
        expected = tuple(expected)
        self._reject_frozen_fields(invoice_id, fields or {})
        values = dict(fields or {})
        values["refund_status"] = next_status
        values["updated_at"] = utcnow()
        try:
            result = self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.status == "paid",
                    Invoice.refund_status.in_(expected),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        won = result.rowcount == 1
        if won:
            logger.info(f"🔄 Invoice {invoice_id} refund: {'/'.join(expected)} -> {next_status}")
        return won

    def save_op_key(self, invoice_id: str, op_key: str) -> None:
        """Cache the gateway OpKey; never overwrites an existing one"""
        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.op_key.is_(None))
            .values(op_key=op_key)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

    def assign_gateway_invoice_id(self, invoice_id: str) -> int:
        """Allocate (once) the integer InvId the gateway uses for this invoice"""
        invoice = self.get(invoice_id)
        if invoice is not None and invoice.gateway_invoice_id is not None:
            return invoice.gateway_invoice_id

        number = GatewayInvoiceNumber(invoice_id=invoice_id)
        self.db.add(number)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request allocated it first
            self.db.rollback()
            number = self.db.execute(
                select(GatewayInvoiceNumber).where(GatewayInvoiceNumber.invoice_id == invoice_id)
            ).scalar_one()

        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.gateway_invoice_id.is_(None))
            .values(gateway_invoice_id=number.id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        logger.info(f"🔢 Invoice {invoice_id} mapped to gateway InvId {number.id}")
        return number.id

    def list_pending_older_than(self, duration: timedelta, limit: int = 200) -> list[Invoice]:
        """Pending invoices that were sent to the gateway at least `duration` ago"""
        cutoff = utcnow() - duration
        return (
            self.db.query(Invoice)
            .filter(
                Invoice.status == "pending",
                Invoice.gateway_invoice_id.isnot(None),
                Invoice.created_at <= cutoff,
            )
            .order_by(Invoice.created_at)
            .limit(limit)
            .all()
        )

    def list_refunds_in_state(self, refund_status: str, limit: int = 200) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.refund_status == refund_status)
            .order_by(Invoice.updated_at)
            .limit(limit)
            .all()
        )
