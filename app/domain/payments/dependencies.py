"""FastAPI dependencies for the payments domain; collaborators live on app.state"""

from datetime import timedelta

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...config import RobokassaSettings
from ...database import get_db
from ...services.notification_service import NotificationPublisher
from ...services.payment_poller import ReconciliationPoller
from ...services.robokassa_service import PaymentGateway
from ...webhook_security import SignatureVerifier
from .exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentError,
    PaymentIntegrityError,
    RefundNotAllowedError,
    SignatureVerificationError,
)
from .refund_service import RefundCoordinator
from .repository import InvoiceRepository
from .state_machine import PaymentStateMachine


def get_settings(request: Request) -> RobokassaSettings:
    return request.app.state.robokassa_settings


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_notifier(request: Request) -> NotificationPublisher:
    return request.app.state.notifier


def get_poller(request: Request) -> ReconciliationPoller:
    return request.app.state.poller


def get_invoice_repository(db: Session = Depends(get_db)) -> InvoiceRepository:
    return InvoiceRepository(db)


def get_state_machine(
    repository: InvoiceRepository = Depends(get_invoice_repository),
    notifier: NotificationPublisher = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentStateMachine:
    """Dependency injection for PaymentStateMachine"""
    return PaymentStateMachine(repository, notifier, gateway)


def get_refund_coordinator(
    request: Request,
    repository: InvoiceRepository = Depends(get_invoice_repository),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationPublisher = Depends(get_notifier),
    settings: RobokassaSettings = Depends(get_settings),
) -> RefundCoordinator:
    """Dependency injection for RefundCoordinator"""
    cutoff: timedelta = request.app.state.refund_cutoff
    return RefundCoordinator(repository, gateway, notifier, cutoff, auto_refund=settings.auto_refund)


def http_error(e: PaymentError) -> HTTPException:
    """Translate a payment error into the HTTP response the caller sees"""
    if isinstance(e, SignatureVerificationError):
        return HTTPException(status_code=401, detail="Invalid signature")
    if isinstance(e, InvoiceNotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, PaymentIntegrityError):
        return HTTPException(status_code=409, detail={"code": e.code, "message": e.message})
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail={"code": e.code, "message": e.message})
    if isinstance(e, RefundNotAllowedError):
        return HTTPException(status_code=422, detail={"code": e.code, "reason": e.reason})
    if isinstance(e, GatewayUnavailableError):
        return HTTPException(
            status_code=503, detail={"code": e.code, "message": "Payment gateway unavailable, try again later"}
        )
    if isinstance(e, GatewayError):
        return HTTPException(status_code=502, detail={"code": e.code, "message": e.message})
    return HTTPException(status_code=500, detail="Payment processing failed")
