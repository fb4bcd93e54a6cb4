import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.domain.payments.exceptions import (
    ConcurrentTransitionError,
    GatewayUnavailableError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentIntegrityError,
)
from app.domain.payments.schemas import PaymentEventStatus
from app.domain.payments.state_machine import PaymentStateMachine
from app.models_invoice import ImmutableInvoiceError
from app.services.notification_service import INVOICE_CANCELLED, PAYMENT_FAILED, PAYMENT_SUCCESS
from app.utils.clock import utcnow


def apply(machine, publisher, *args, **kwargs):
    async def scenario():
        try:
            return await machine.apply_payment_event(*args, **kwargs)
        finally:
            await publisher.drain()

    return asyncio.run(scenario())


class TestSuccessfulPayment:
    def test_750_payment_then_replay(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice(amount="750.00")

        outcome = apply(machine, publisher, invoice.id, "17", "750.00", "success", payment_method="BankCard")

        assert outcome.applied is True
        stored = repository.get(invoice.id)
        assert stored.status == "paid"
        assert stored.operation_id == "17"
        assert stored.payment_method == "BankCard"
        assert stored.paid_at is not None
        assert len(dispatcher.of_type(PAYMENT_SUCCESS)) == 1
        assert dispatcher.events[0][0] == "parent-1"

        replay = apply(machine, publisher, invoice.id, "17", "750.00", "success")

        assert replay.applied is False
        assert repository.get(invoice.id).status == "paid"
        assert len(dispatcher.of_type(PAYMENT_SUCCESS)) == 1

    def test_gateway_amount_with_six_decimals(self, machine, publisher, repository, make_invoice):
        invoice = make_invoice(amount="750.00")
        apply(machine, publisher, invoice.id, "17", "750.000000", PaymentEventStatus.SUCCESS)
        assert repository.get(invoice.id).status == "paid"

    def test_op_key_is_cached_on_success(self, machine, publisher, repository, make_invoice):
        invoice = make_invoice()
        apply(machine, publisher, invoice.id, "17", "750.00", "success", op_key="op-key-1")
        assert repository.get(invoice.id).op_key == "op-key-1"


class TestAmountIntegrity:
    @pytest.mark.parametrize("claimed", ["749.99", "750.01", "75.00", "0", "-750.00", "750.001", None, "abc"])
    def test_mismatch_fails_and_leaves_status(self, machine, publisher, dispatcher, repository, make_invoice, claimed):
        invoice = make_invoice(amount="750.00")

        with pytest.raises(PaymentIntegrityError):
            apply(machine, publisher, invoice.id, "17", claimed, "success")

        stored = repository.get(invoice.id)
        assert stored.status == "pending"
        assert stored.operation_id is None
        assert dispatcher.events == []

    def test_failure_event_with_wrong_amount_is_rejected(self, machine, publisher, repository, make_invoice):
        invoice = make_invoice(amount="750.00")
        with pytest.raises(PaymentIntegrityError):
            apply(machine, publisher, invoice.id, "17", Decimal("10.00"), "failed")
        assert repository.get(invoice.id).status == "pending"

    def test_different_operation_on_paid_invoice(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice(paid=True, operation_id="cash:abc")

        with pytest.raises(PaymentIntegrityError):
            apply(machine, publisher, invoice.id, "17", "750.00", "success")

        stored = repository.get(invoice.id)
        assert stored.operation_id == "cash:abc"
        assert dispatcher.events == []


class TestFailure:
    def test_failed_event(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice()
        outcome = apply(machine, publisher, invoice.id, "17", None, "failed")

        assert outcome.applied is True
        assert repository.get(invoice.id).status == "failed"
        assert len(dispatcher.of_type(PAYMENT_FAILED)) == 1

    def test_failed_invoice_never_becomes_paid(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice()
        apply(machine, publisher, invoice.id, "17", None, "failed")

        with pytest.raises(InvalidTransitionError) as exc_info:
            apply(machine, publisher, invoice.id, "17", "750.00", "success")

        assert exc_info.value.current_status == "failed"
        assert repository.get(invoice.id).status == "failed"
        assert dispatcher.of_type(PAYMENT_SUCCESS) == []

    def test_failed_replay_is_noop(self, machine, publisher, dispatcher, make_invoice):
        invoice = make_invoice()
        apply(machine, publisher, invoice.id, "17", None, "failed")
        outcome = apply(machine, publisher, invoice.id, "17", None, "failed")

        assert outcome.applied is False
        assert len(dispatcher.of_type(PAYMENT_FAILED)) == 1

    def test_late_failure_on_paid_invoice(self, machine, publisher, repository, make_invoice):
        invoice = make_invoice(paid=True)
        with pytest.raises(InvalidTransitionError):
            apply(machine, publisher, invoice.id, "17", None, "failed")
        assert repository.get(invoice.id).status == "paid"


class TestLookupAndAdminActions:
    def test_unknown_invoice(self, machine, publisher):
        with pytest.raises(InvoiceNotFoundError):
            apply(machine, publisher, "no-such-invoice", "17", "750.00", "success")

    def test_unknown_status_value(self, machine, publisher, make_invoice):
        invoice = make_invoice()
        with pytest.raises(ValueError):
            apply(machine, publisher, invoice.id, "17", "750.00", "refunded")

    def test_cash_confirmation(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice(gateway_invoice=False)

        async def scenario():
            outcome = await machine.confirm_cash_payment(invoice.id)
            await publisher.drain()
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.applied is True
        stored = repository.get(invoice.id)
        assert stored.status == "paid"
        assert stored.payment_method == "cash"
        assert stored.operation_id.startswith("cash:")
        assert len(dispatcher.of_type(PAYMENT_SUCCESS)) == 1

    def test_cancel_pending_only(self, machine, publisher, dispatcher, repository, make_invoice):
        pending = make_invoice()
        paid = make_invoice(paid=True)

        async def scenario():
            outcome = await machine.cancel(pending.id)
            again = await machine.cancel(pending.id)
            with pytest.raises(InvalidTransitionError):
                await machine.cancel(paid.id)
            await publisher.drain()
            return outcome, again

        outcome, again = asyncio.run(scenario())

        assert outcome.applied is True
        assert again.applied is False
        assert repository.get(pending.id).status == "cancelled"
        assert repository.get(paid.id).status == "paid"
        assert len(dispatcher.of_type(INVOICE_CANCELLED)) == 1

    def test_cancelled_invoice_rejects_payment(self, machine, publisher, make_invoice):
        invoice = make_invoice()
        asyncio.run(machine.cancel(invoice.id))
        with pytest.raises(InvalidTransitionError):
            apply(machine, publisher, invoice.id, "17", "750.00", "success")


class TestLostRace:
    def test_stale_reader_loses_compare_and_set(self, machine, publisher, dispatcher, repository, make_invoice):
        """The poller read 'pending', then the webhook paid the invoice before its update landed"""
        invoice = make_invoice()
        original_cas = repository.compare_and_set_status

        def webhook_wins_first(invoice_id, expected, next_status, fields=None):
            original_cas(invoice_id, "pending", "paid", {"operation_id": "17", "payment_method": "BankCard"})
            return original_cas(invoice_id, expected, next_status, fields)

        repository.compare_and_set_status = webhook_wins_first

        with pytest.raises(ConcurrentTransitionError):
            apply(machine, publisher, invoice.id, "17", None, "failed")

        assert repository.get(invoice.id).status == "paid"
        assert dispatcher.events == []

    def test_stale_reader_same_operation_is_replay(self, machine, publisher, dispatcher, repository, make_invoice):
        invoice = make_invoice()
        original_cas = repository.compare_and_set_status

        def webhook_wins_first(invoice_id, expected, next_status, fields=None):
            original_cas(invoice_id, "pending", "paid", {"operation_id": "17", "payment_method": "BankCard"})
            return original_cas(invoice_id, expected, next_status, fields)

        repository.compare_and_set_status = webhook_wins_first

        outcome = apply(machine, publisher, invoice.id, "17", "750.00", "success")

        assert outcome.applied is False
        assert dispatcher.events == []


class TestPaidInvoiceImmutability:
    def test_orm_update_of_amount_is_blocked(self, db, repository, make_invoice):
        invoice = make_invoice(paid=True)
        invoice = repository.get(invoice.id)
        invoice.amount = Decimal("1.00")

        with pytest.raises(ImmutableInvoiceError):
            db.commit()
        db.rollback()
        assert repository.get(invoice.id).amount == Decimal("750.00")

    def test_orm_update_of_operation_id_is_blocked(self, db, repository, make_invoice):
        invoice = make_invoice(paid=True)
        invoice = repository.get(invoice.id)
        invoice.operation_id = "other"

        with pytest.raises(ImmutableInvoiceError):
            db.commit()
        db.rollback()

    def test_pending_invoice_amount_can_change(self, db, repository, make_invoice):
        invoice = make_invoice()
        invoice = repository.get(invoice.id)
        invoice.amount = Decimal("800.00")
        db.commit()
        assert repository.get(invoice.id).amount == Decimal("800.00")

    def test_refund_write_cannot_touch_amount_or_operation(self, repository, make_invoice):
        invoice = make_invoice(paid=True)

        with pytest.raises(ImmutableInvoiceError):
            repository.compare_and_set_refund_status(
                invoice.id, ("none",), "none", {"amount": Decimal("1.00"), "operation_id": "forged"}
            )

        repository.db.expire_all()
        stored = repository.get(invoice.id)
        assert stored.amount == Decimal("750.00")
        assert stored.operation_id == str(invoice.gateway_invoice_id)

    def test_transition_out_of_paid_cannot_rewrite_operation(self, repository, make_invoice):
        invoice = make_invoice(paid=True)

        with pytest.raises(ImmutableInvoiceError):
            repository.compare_and_set_status(invoice.id, "paid", "paid", {"operation_id": "forged"})

        repository.db.expire_all()
        assert repository.get(invoice.id).operation_id == str(invoice.gateway_invoice_id)

    def test_pending_transition_may_set_operation(self, repository, make_invoice):
        invoice = make_invoice()

        assert repository.compare_and_set_status(invoice.id, "pending", "paid", {"operation_id": "17"}) is True
        assert repository.get(invoice.id).operation_id == "17"


class TestTimestamps:
    def test_default_created_at_is_utc(self, repository):
        before = utcnow()
        invoice = repository.create(
            participant_id="user-1",
            master_class_id="mc-42",
            workshop_date=before + timedelta(days=3),
            amount=Decimal("750.00"),
        )
        after = utcnow()

        assert invoice.created_at.tzinfo is None
        assert before - timedelta(seconds=1) <= invoice.created_at <= after + timedelta(seconds=1)
        assert invoice.updated_at is not None


class TestSecondReceipt:
    @pytest.fixture
    def receipt_machine(self, repository, publisher, gateway):
        return PaymentStateMachine(repository, publisher, gateway)

    def test_issued_once_after_online_payment(self, receipt_machine, publisher, gateway, make_invoice):
        invoice = make_invoice()
        inv_id = str(invoice.gateway_invoice_id)

        apply(receipt_machine, publisher, invoice.id, inv_id, "750.00", "success")
        apply(receipt_machine, publisher, invoice.id, inv_id, "750.00", "success")

        assert gateway.method_calls("create_second_receipt") == [
            {"method": "create_second_receipt", "invoice_id": invoice.id}
        ]

    def test_receipt_failure_does_not_undo_payment(self, receipt_machine, publisher, gateway, repository, make_invoice):
        invoice = make_invoice()
        gateway.second_receipt_error = GatewayUnavailableError("RoboFiscal timeout")

        outcome = apply(receipt_machine, publisher, invoice.id, str(invoice.gateway_invoice_id), "750.00", "success")

        assert outcome.applied is True
        assert repository.get(invoice.id).status == "paid"

    def test_not_issued_for_cash_or_failed_payments(self, receipt_machine, publisher, gateway, make_invoice):
        cash = make_invoice(gateway_invoice=False)
        failed = make_invoice()

        async def scenario():
            await receipt_machine.confirm_cash_payment(cash.id)
            await receipt_machine.apply_payment_event(
                failed.id, str(failed.gateway_invoice_id), "750.00", "failed"
            )
            await publisher.drain()

        asyncio.run(scenario())

        assert gateway.method_calls("create_second_receipt") == []
