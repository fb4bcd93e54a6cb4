"""
Robokassa Webhook Handler
ResultURL is the authoritative payment confirmation (signed with Password #2).
ResultURL2 carries the same confirmation as a JWS token signed by Robokassa.
SuccessURL / FailURL are browser redirects (Password #1) and never change payment state.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import ValidationError

from ..config import FRONTEND_URL, RobokassaSettings
from ..domain.payments.dependencies import (
    get_invoice_repository,
    get_poller,
    get_settings,
    get_state_machine,
    get_verifier,
    http_error,
)
from ..domain.payments.exceptions import PaymentError, PaymentIntegrityError
from ..domain.payments.repository import InvoiceRepository
from ..domain.payments.schemas import (
    JWSNotification,
    PaymentEventStatus,
    RedirectNotification,
    ResultNotification,
)
from ..domain.payments.state_machine import PaymentStateMachine, payload_fingerprint
from ..services.payment_poller import ReconciliationPoller
from ..webhook_security import SecretTier, SignatureVerifier, extract_pass_through_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/robokassa", tags=["webhooks"])


async def read_gateway_params(request: Request) -> dict[str, str]:
    """Robokassa may call back with GET query params or a POST form"""
    params = {key: value for key, value in request.query_params.items()}
    if request.method == "POST":
        form = await request.form()
        params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


def _fingerprint(params: dict[str, str]) -> str:
    return payload_fingerprint(*(f"{k}={v}" for k, v in sorted(params.items()) if k != "SignatureValue"))


@router.api_route("/result", methods=["GET", "POST"], response_class=PlainTextResponse)
async def handle_result_notification(
    request: Request,
    repository: InvoiceRepository = Depends(get_invoice_repository),
    verifier: SignatureVerifier = Depends(get_verifier),
    machine: PaymentStateMachine = Depends(get_state_machine),
):
    """
    ResultURL callback.

    Answers "OK{InvId}" once the invoice write is durable. Any other answer makes
    Robokassa retry, which is what we want for unknown invoices and conflicts.
    """
    try:
        params = await read_gateway_params(request)
        fingerprint = _fingerprint(params)
        logger.info(f"📥 Robokassa result: InvId={params.get('InvId')}, OutSum={params.get('OutSum')}")

        if not verifier.verify(params, params.get("SignatureValue"), SecretTier.RESULT):
            logger.warning(
                f"🔒 SECURITY: invalid ResultURL signature (InvId={params.get('InvId')}, "
                f"client={request.client.host if request.client else 'unknown'}, event={fingerprint})"
            )
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            notification = ResultNotification.model_validate(params)
        except ValidationError:
            logger.error(f"❌ Malformed ResultURL payload (event={fingerprint})")
            raise HTTPException(status_code=400, detail="Malformed notification") from None

        invoice = repository.get_by_gateway_invoice_id(notification.invoice_number)
        if invoice is None:
            logger.warning(f"⚠️ ResultURL for unknown InvId {notification.inv_id} (event={fingerprint})")
            raise HTTPException(status_code=404, detail="Invoice not found")

        correlation_id = notification.correlation_invoice_id()
        if correlation_id and correlation_id != invoice.id:
            logger.error(
                f"🚨 INTEGRITY: InvId {notification.inv_id} belongs to invoice {invoice.id} "
                f"but Shp_invoice_id={correlation_id} (event={fingerprint})"
            )
            raise HTTPException(status_code=409, detail="Correlation mismatch")
        try:
            outcome = await machine.apply_payment_event(
                invoice.id,
                notification.inv_id,
                notification.out_sum,
                PaymentEventStatus.SUCCESS,
                payment_method=notification.payment_method or notification.inc_curr_label,
            )
        except PaymentIntegrityError as e:
            logger.error(f"🚨 INTEGRITY on ResultURL for invoice {invoice.id}: {e} (event={fingerprint})")
            raise http_error(e) from None
        except PaymentError as e:
            logger.warning(f"⚠️ ResultURL rejected for invoice {invoice.id}: {e} (event={fingerprint})")
            raise http_error(e) from None

        if not outcome.applied:
            logger.info(f"🔁 Duplicate ResultURL for invoice {invoice.id} acknowledged")
        return PlainTextResponse(f"OK{notification.inv_id}")

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ResultURL processing error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")



async def read_jws_token(request: Request) -> Optional[str]:
    """ResultURL2 posts the token as JSON {"token": ...}, a form field, or the raw body"""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return None
        token = body.get("token") if isinstance(body, dict) else None
        return token if isinstance(token, str) else None
    if "form" in content_type:
        form = await request.form()
        token = form.get("token")
        return token if isinstance(token, str) else None
    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    return raw or None


@router.post("/result/jws")
async def handle_jws_notification(
    request: Request,
    repository: InvoiceRepository = Depends(get_invoice_repository),
    verifier: SignatureVerifier = Depends(get_verifier),
    settings: RobokassaSettings = Depends(get_settings),
    machine: PaymentStateMachine = Depends(get_state_machine),
):
    """ResultURL2 callback; a verified OK state confirms the payment like ResultURL does"""
    try:
        token = await read_jws_token(request)
        if not token:
            raise HTTPException(status_code=400, detail="Token is required")

        data = verifier.verify_jws(token)
        if data is None:
            logger.warning(
                f"🔒 SECURITY: invalid JWS notification "
                f"(client={request.client.host if request.client else 'unknown'})"
            )
            raise HTTPException(status_code=401, detail="Invalid JWS token")

        try:
            notification = JWSNotification.model_validate(data)
        except ValidationError:
            logger.error("❌ Malformed JWS notification payload")
            raise HTTPException(status_code=400, detail="Malformed notification") from None

        fingerprint = payload_fingerprint(notification.inv_id, notification.op_key, notification.state)
        if notification.shop and notification.shop != settings.merchant_login:
            logger.error(f"🚨 INTEGRITY: JWS notification for shop {notification.shop} (event={fingerprint})")
            raise HTTPException(status_code=409, detail="Shop mismatch")

        if not notification.is_success:
            # Non-final failures are left to reconciliation against OpStateExt
            logger.info(f"⚠️ JWS notification with state {notification.state} for InvId {notification.inv_id}")
            return {"status": "payment_failed"}

        invoice = repository.get_by_gateway_invoice_id(notification.invoice_number)
        if invoice is None:
            logger.warning(f"⚠️ JWS notification for unknown InvId {notification.inv_id} (event={fingerprint})")
            raise HTTPException(status_code=404, detail="Invoice not found")

        try:
            outcome = await machine.apply_payment_event(
                invoice.id,
                notification.inv_id,
                notification.claimed_amount,
                PaymentEventStatus.SUCCESS,
                payment_method=notification.payment_method,
                op_key=notification.op_key,
            )
        except PaymentIntegrityError as e:
            logger.error(f"🚨 INTEGRITY on ResultURL2 for invoice {invoice.id}: {e} (event={fingerprint})")
            raise http_error(e) from None
        except PaymentError as e:
            logger.warning(f"⚠️ ResultURL2 rejected for invoice {invoice.id}: {e} (event={fingerprint})")
            raise http_error(e) from None

        return {"status": "success" if outcome.applied else "duplicate"}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ ResultURL2 processing error: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")


@router.api_route("/success", methods=["GET", "POST"])
async def handle_success_redirect(
    request: Request,
    background_tasks: BackgroundTasks,
    verifier: SignatureVerifier = Depends(get_verifier),
    poller: ReconciliationPoller = Depends(get_poller),
):
    """Browser lands here after paying; confirmation still comes from ResultURL or the poller"""
    params = await read_gateway_params(request)
    redirect = RedirectNotification.model_validate(params)
    shp = extract_pass_through_params(params)
    invoice_id = next((v for k, v in shp.items() if k.lower() == "shp_invoice_id"), None)

    query = {"invoice_id": invoice_id or ""}
    if verifier.verify(params, redirect.signature_value, SecretTier.PAYMENT_PAGE):
        if invoice_id and poller is not None:
            background_tasks.add_task(poller.check_invoice, invoice_id)
    else:
        logger.warning(f"🔒 SECURITY: invalid SuccessURL signature (InvId={redirect.inv_id})")
        query["status"] = "unverified"

    return RedirectResponse(f"{FRONTEND_URL}/payment/success?{urlencode(query)}", status_code=303)


@router.api_route("/fail", methods=["GET", "POST"])
async def handle_fail_redirect(request: Request):
    params = await read_gateway_params(request)
    shp = extract_pass_through_params(params)
    invoice_id = next((v for k, v in shp.items() if k.lower() == "shp_invoice_id"), "")
    logger.info(f"↩️ Payment abandoned or failed in browser (InvId={params.get('InvId')})")
    return RedirectResponse(f"{FRONTEND_URL}/payment/fail?{urlencode({'invoice_id': invoice_id})}", status_code=303)
