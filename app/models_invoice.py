"""
Invoice model for workshop registrations paid through Robokassa
"""

import logging
import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text, event, inspect
from sqlalchemy.orm import column_property

from .database import Base
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("pending", "paid", "failed", "cancelled")
REFUND_STATUSES = ("none", "requested", "processing", "completed", "rejected")

# Fields frozen once an invoice is paid
PAID_IMMUTABLE_FIELDS = ("amount", "operation_id")


def generate_invoice_id():
    return str(uuid.uuid4())


class ImmutableInvoiceError(Exception):
    """Raised when a flush tries to change a frozen field of a paid invoice"""

    def __init__(self, invoice_id: str, field: str):
        self.invoice_id = invoice_id
        self.field = field
        super().__init__(f"Invoice {invoice_id} is paid; {field} cannot change")


class Invoice(Base):
    """One participant's bill for one workshop occurrence"""

    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_invoice_id)
    participant_id = Column(String(64), nullable=False, index=True)  # user notified on changes
    participant_name = Column(String(255), nullable=True)
    master_class_id = Column(String(64), nullable=False, index=True)
    workshop_date = Column(DateTime, nullable=False)
    description = Column(String(500), nullable=True)

    # Pricing
    # active_history loads the old value on assignment so the paid-invoice guard can compare
    amount = column_property(Column(Numeric(10, 2), nullable=False), active_history=True)
    currency = Column(String(3), default="RUB", nullable=False)
    line_items = Column(JSON, default=list)  # fiscal receipt items, reused for refunds

    # Status
    status = column_property(
        Column(String(20), default="pending", nullable=False, index=True), active_history=True
    )  # pending, paid, failed, cancelled
    payment_method = Column(String(50), nullable=True)  # card, sbp, cash...

    # Robokassa integration
    gateway_invoice_id = Column(Integer, unique=True, nullable=True, index=True)  # InvId
    operation_id = column_property(Column(String(255), nullable=True), active_history=True)
    op_key = Column(String(255), nullable=True)  # needed to address the charge in refunds

    # Refunds
    refund_status = Column(String(20), default="none", nullable=False, index=True)
    refund_reason = Column(Text, nullable=True)
    refund_email = Column(String(255), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_request_id = Column(String(255), unique=True, nullable=True, index=True)
    refund_message = Column(Text, nullable=True)  # gateway's rejection reason
    refund_requested_at = Column(DateTime, nullable=True)
    refund_completed_at = Column(DateTime, nullable=True)

    # Dates
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)  # naive UTC, compared against utcnow()
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Invoice {self.id} status={self.status} refund={self.refund_status}>"


class GatewayInvoiceNumber(Base):
    """Integer InvId allocation; Robokassa only accepts numeric invoice ids"""

    __tablename__ = "gateway_invoice_numbers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(36), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


@event.listens_for(Invoice, "before_update")
def _check_paid_invoice_immutability(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status != "paid":
        return

    for field in PAID_IMMUTABLE_FIELDS:
        history = state.attrs[field].history
        if history.deleted and history.added and history.deleted[0] != history.added[0]:
            logger.error(f"❌ Blocked change of {field} on paid invoice {target.id}")
            raise ImmutableInvoiceError(target.id, field)
