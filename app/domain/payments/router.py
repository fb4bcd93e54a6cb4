"""Payments router - invoice, payment link and refund endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...auth import CurrentUser, get_current_user, require_admin
from ...models_invoice import Invoice
from ...services.payment_poller import ReconciliationPoller
from ...services.robokassa_service import PaymentGateway
from ...utils.clock import to_naive_utc
from .dependencies import (
    get_gateway,
    get_invoice_repository,
    get_poller,
    get_refund_coordinator,
    get_state_machine,
    http_error,
)
from .exceptions import PaymentError
from .refund_service import RefundCoordinator, RefundRequest
from .repository import InvoiceRepository
from .schemas import (
    EligibilityResponse,
    InvoiceCreate,
    InvoiceResponse,
    PaymentLinkResponse,
    RefundInitiateRequest,
    RefundResponse,
    SyncSummaryResponse,
)
from .state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["Payments"])


def _load_for_user(repository: InvoiceRepository, invoice_id: str, user: CurrentUser) -> Invoice:
    invoice = repository.get(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    if not user.is_admin and invoice.participant_id != user.user_id:
        logger.warning(f"⚠️ User {user.user_id} tried to access invoice {invoice_id}")
        raise HTTPException(status_code=403, detail="Not allowed to access this invoice")
    return invoice


def _refund_response(request: RefundRequest) -> RefundResponse:
    return RefundResponse(
        invoice_id=request.invoice_id,
        refund_status=request.refund_status,
        request_id=request.request_id,
        amount=request.amount,
        message=request.message,
    )


# ============================================================================
# INVOICES
# ============================================================================


@router.post("", response_model=InvoiceResponse, status_code=201)
async def create_invoice(
    body: InvoiceCreate,
    _admin: CurrentUser = Depends(require_admin),
    repository: InvoiceRepository = Depends(get_invoice_repository),
):
    """Bill a participant's registration (admin)"""
    return repository.create(
        participant_id=body.participant_id,
        participant_name=body.participant_name,
        master_class_id=body.master_class_id,
        workshop_date=to_naive_utc(body.workshop_date),
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        line_items=[item.model_dump(mode="json") for item in body.line_items],
    )


@router.get("", response_model=list[InvoiceResponse])
async def list_my_invoices(
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
):
    return repository.list_for_participant(user.user_id)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
):
    return _load_for_user(repository, invoice_id, user)


@router.post("/{invoice_id}/payment-link", response_model=PaymentLinkResponse)
async def create_payment_link(
    invoice_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Hosted payment page URL for a pending invoice"""
    invoice = _load_for_user(repository, invoice_id, user)
    if invoice.status != "pending":
        raise HTTPException(status_code=409, detail=f"Invoice is {invoice.status}")

    repository.assign_gateway_invoice_id(invoice_id)
    link = gateway.create_payment_link(repository.get(invoice_id))
    return PaymentLinkResponse(
        invoice_id=invoice_id, payment_url=link.url, gateway_invoice_id=link.inv_id, out_sum=link.out_sum
    )


@router.post("/{invoice_id}/confirm-cash", response_model=InvoiceResponse)
async def confirm_cash_payment(
    invoice_id: str,
    _admin: CurrentUser = Depends(require_admin),
    machine: PaymentStateMachine = Depends(get_state_machine),
):
    """Mark a pending invoice as paid in cash (admin)"""
    try:
        outcome = await machine.confirm_cash_payment(invoice_id)
    except PaymentError as e:
        raise http_error(e) from None
    return outcome.invoice


@router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: str,
    _admin: CurrentUser = Depends(require_admin),
    machine: PaymentStateMachine = Depends(get_state_machine),
):
    try:
        outcome = await machine.cancel(invoice_id)
    except PaymentError as e:
        raise http_error(e) from None
    return outcome.invoice


@router.post("/{invoice_id}/check", response_model=InvoiceResponse)
async def check_invoice_with_gateway(
    invoice_id: str,
    _admin: CurrentUser = Depends(require_admin),
    repository: InvoiceRepository = Depends(get_invoice_repository),
    poller: ReconciliationPoller = Depends(get_poller),
):
    """Reconcile one invoice with the gateway right now (admin)"""
    if repository.get(invoice_id) is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    await poller.check_invoice(invoice_id)
    repository.db.expire_all()
    return repository.get(invoice_id)


# ============================================================================
# REFUNDS
# ============================================================================


@router.get("/{invoice_id}/refund-eligibility", response_model=EligibilityResponse)
async def check_refund_eligibility(
    invoice_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    _load_for_user(repository, invoice_id, user)
    eligibility = coordinator.check_eligibility(invoice_id)
    return EligibilityResponse(invoice_id=invoice_id, eligible=eligibility.eligible, reason=eligibility.reason)


@router.post("/{invoice_id}/refund", response_model=RefundResponse)
async def request_refund(
    invoice_id: str,
    body: RefundInitiateRequest,
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    _load_for_user(repository, invoice_id, user)
    try:
        request = await coordinator.initiate_refund(invoice_id, body.reason, amount=body.amount, email=body.email)
    except PaymentError as e:
        raise http_error(e) from None
    return _refund_response(request)


@router.post("/{invoice_id}/refund/approve", response_model=RefundResponse)
async def approve_refund(
    invoice_id: str,
    _admin: CurrentUser = Depends(require_admin),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    """Send a held refund to the gateway (admin)"""
    try:
        request = await coordinator.approve_refund(invoice_id)
    except PaymentError as e:
        raise http_error(e) from None
    return _refund_response(request)


@router.post("/{invoice_id}/refund/complete", response_model=RefundResponse)
async def complete_manual_refund(
    invoice_id: str,
    _admin: CurrentUser = Depends(require_admin),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    """Record a refund paid back outside the gateway (admin)"""
    try:
        request = coordinator.mark_refund_completed(invoice_id)
    except PaymentError as e:
        raise http_error(e) from None
    return _refund_response(request)


@router.get("/refunds/{request_id}", response_model=RefundResponse)
async def get_refund_status(
    request_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: InvoiceRepository = Depends(get_invoice_repository),
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
):
    invoice = repository.get_by_refund_request_id(request_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Refund request not found")
    _load_for_user(repository, invoice.id, user)
    try:
        status = await coordinator.get_refund_status(request_id)
    except PaymentError as e:
        raise http_error(e) from None
    return RefundResponse(
        invoice_id=status.invoice_id,
        refund_status=status.refund_status,
        request_id=status.request_id,
        amount=status.amount,
        message=status.gateway_label,
    )


# ============================================================================
# ADMIN
# ============================================================================


@router.post("/admin/sync-pending", response_model=SyncSummaryResponse)
async def sync_pending_invoices(
    _admin: CurrentUser = Depends(require_admin),
    poller: ReconciliationPoller = Depends(get_poller),
):
    """Run one reconciliation cycle now; skipped if the scheduled one is running"""
    summary = await poller.run_cycle()
    return SyncSummaryResponse(
        checked=summary.checked,
        updated=summary.updated,
        failed=summary.failed,
        skipped=summary.skipped,
        refunds_checked=summary.refunds_checked,
        refunds_updated=summary.refunds_updated,
        details=summary.details,
    )
