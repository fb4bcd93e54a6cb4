"""
Reconciliation poller
Periodically asks Robokassa about invoices stuck in "pending" (the ResultURL call
may never have arrived) and about refunds still "processing", and feeds the answers
through the same state machine the webhooks use.

Runs as an asyncio task inside the API process:
- start()/stop() are idempotent; stop() lets the in-flight cycle finish
- a cycle that starts while another is running is skipped, not queued
- gateway queries are capped by a semaphore
- one invoice failing never aborts the rest of the cycle
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..domain.payments.exceptions import PaymentError, PaymentIntegrityError
from ..domain.payments.refund_service import RefundCoordinator
from ..domain.payments.repository import InvoiceRepository
from ..domain.payments.schemas import PaymentEventStatus
from ..domain.payments.state_machine import PaymentStateMachine
from .notification_service import NotificationPublisher
from .robokassa_service import PaymentGateway

logger = logging.getLogger(__name__)

UPDATED = "updated"
UNCHANGED = "unchanged"
FAILED = "failed"


@dataclass
class CycleSummary:
    checked: int = 0
    updated: int = 0
    failed: int = 0
    skipped: bool = False
    refunds_checked: int = 0
    refunds_updated: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)


class ReconciliationPoller:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: PaymentGateway,
        notifier: NotificationPublisher,
        interval: float = 60.0,
        grace: timedelta = timedelta(minutes=2),
        concurrency: int = 4,
        refund_cutoff: timedelta = timedelta(hours=3),
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.interval = interval
        self.grace = grace
        self.concurrency = concurrency
        self.refund_cutoff = refund_cutoff

        self._semaphore = asyncio.Semaphore(concurrency)
        self._cycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.last_summary: Optional[CycleSummary] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.debug("Reconciliation poller already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            f"🔄 Reconciliation poller started (interval={self.interval}s, "
            f"grace={self.grace.total_seconds():.0f}s, concurrency={self.concurrency})"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        await task
        logger.info("🛑 Reconciliation poller stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"❌ Reconciliation cycle crashed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleSummary:
        if self._cycle_lock.locked():
            logger.info("⏭️ Reconciliation cycle skipped: previous cycle still running")
            return CycleSummary(skipped=True)

        async with self._cycle_lock:
            summary = CycleSummary()
            db = self.session_factory()
            try:
                repository = InvoiceRepository(db)
                pending = [
                    (invoice.id, invoice.gateway_invoice_id)
                    for invoice in repository.list_pending_older_than(self.grace)
                ]
                refund_requests = [
                    invoice.refund_request_id
                    for invoice in repository.list_refunds_in_state("processing")
                    if invoice.refund_request_id
                ]
            finally:
                db.close()

            invoice_results = await asyncio.gather(
                *(self._guarded_invoice(invoice_id, inv_id) for invoice_id, inv_id in pending)
            )
            refund_results = await asyncio.gather(
                *(self._guarded_refund(request_id) for request_id in refund_requests)
            )

            for (invoice_id, _), outcome in zip(pending, invoice_results):
                summary.checked += 1
                if outcome == UPDATED:
                    summary.updated += 1
                elif outcome == FAILED:
                    summary.failed += 1
                summary.details.append({"invoice_id": invoice_id, "result": outcome})

            for outcome in refund_results:
                summary.refunds_checked += 1
                if outcome == UPDATED:
                    summary.refunds_updated += 1
                elif outcome == FAILED:
                    summary.failed += 1

            self.last_summary = summary
            logger.info(
                f"📊 Reconciliation cycle: checked={summary.checked}, updated={summary.updated}, "
                f"failed={summary.failed}, refunds_checked={summary.refunds_checked}, "
                f"refunds_updated={summary.refunds_updated}"
            )
            return summary

    async def check_invoice(self, invoice_id: str) -> str:
        """Reconcile one invoice now, outside the regular schedule"""
        db = self.session_factory()
        try:
            invoice = InvoiceRepository(db).get(invoice_id)
            if invoice is None or invoice.status != "pending" or invoice.gateway_invoice_id is None:
                return UNCHANGED
            inv_id = invoice.gateway_invoice_id
        finally:
            db.close()
        return await self._guarded_invoice(invoice_id, inv_id)

    async def _guarded_invoice(self, invoice_id: str, inv_id: int) -> str:
        try:
            return await self._reconcile_invoice(invoice_id, inv_id)
        except PaymentIntegrityError as e:
            logger.error(f"🚨 INTEGRITY during reconciliation of invoice {invoice_id}: {e}")
            return FAILED
        except PaymentError as e:
            logger.warning(f"⚠️ Reconciliation of invoice {invoice_id} failed ({e.code}): {e}")
            return FAILED
        except Exception as e:
            logger.error(f"❌ Unexpected error reconciling invoice {invoice_id}: {e}", exc_info=True)
            return FAILED

    async def _reconcile_invoice(self, invoice_id: str, inv_id: int) -> str:
        async with self._semaphore:
            state = await self.gateway.check_operation_status(inv_id)

        if state.is_success:
            status = PaymentEventStatus.SUCCESS
        elif state.is_failed:
            status = PaymentEventStatus.FAILED
        else:
            logger.debug(f"🔍 Invoice {invoice_id} still open at gateway (state={state.state_code})")
            return UNCHANGED

        db = self.session_factory()
        try:
            machine = PaymentStateMachine(InvoiceRepository(db), self.notifier, self.gateway)
            outcome = await machine.apply_payment_event(
                invoice_id,
                str(inv_id),
                state.out_sum,
                status,
                payment_method=state.payment_method,
                op_key=state.op_key,
            )
        finally:
            db.close()
        return UPDATED if outcome.applied else UNCHANGED

    async def _guarded_refund(self, request_id: str) -> str:
        db = self.session_factory()
        try:
            coordinator = RefundCoordinator(InvoiceRepository(db), self.gateway, self.notifier, self.refund_cutoff)
            async with self._semaphore:
                status = await coordinator.get_refund_status(request_id)
            return UPDATED if status.refund_status != "processing" else UNCHANGED
        except Exception as e:
            logger.warning(f"⚠️ Refund status check failed for request {request_id}: {e}")
            return FAILED
        finally:
            db.close()
