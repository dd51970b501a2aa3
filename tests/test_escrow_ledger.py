"""
Escrow Ledger Test Suite
========================

Covers:
1. Payment-first capture (success, decline, processor outage)
2. Compensation when a captured payment cannot be recorded
3. Refund eligibility and remaining balance
4. Refund limits, reservations and earning cancellation
5. Recovery of refunds left pending by an unreachable processor
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from config import Config
from models import (
    EarningStatus, JobStatus, PaymentStatus, ReconciliationKind, RefundRecord, RefundStatus,
)
from services.escrow_ledger import captured_amount
from services.event_channel import EngineEvent
from utils.exceptions import (
    RefundLimitExceeded, RetryableProcessorError, RetryBudgetExhausted, TerminalProcessorError,
    ValidationError,
)

POSTER_ID = 1001
WORKER_ID = 2002


class TestCapture:

    @pytest.mark.asyncio
    async def test_capture_charges_total_and_opens_job(self, engine, storage, processor, events):
        result = await engine.jobs.create_job(POSTER_ID, "Paint fence", "White", Decimal("100.00"), "pm_card_visa")

        assert result.is_captured
        assert result.job.status == JobStatus.OPEN.value
        assert result.payment.amount == Decimal("100.00")
        assert result.payment.service_fee == Decimal("5.00")
        assert captured_amount(result.payment) == Decimal("105.00")

        kwargs = processor.create_payment_intent.await_args.kwargs
        assert kwargs["amount"] == Decimal("105.00")
        assert kwargs["payment_method_ref"] == "pm_card_visa"
        assert kwargs["idempotency_key"].startswith(f"job-{result.job.id}-capture-")
        assert kwargs["metadata"]["job_id"] == result.job.id

        assert [n.title for n in await storage.list_notifications(POSTER_ID)] == ["Job Posted"]

    @pytest.mark.asyncio
    async def test_capture_rejected_for_non_pending_job(self, engine, create_open_job):
        job = await create_open_job()
        with pytest.raises(ValidationError):
            await engine.ledger.capture_job_payment(job, "pm_card_visa")

    @pytest.mark.asyncio
    async def test_processor_outage_escalates_and_keeps_job_pending(self, engine, storage, processor):
        processor.create_payment_intent.side_effect = RetryableProcessorError("Stripe API unavailable")

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, RetryableProcessorError)
        assert processor.create_payment_intent.await_count == 3
        assert (await storage.get_job(1)).status == JobStatus.PENDING.value
        assert await storage.get_job_payment(1) is None

        items = await storage.list_reconciliation_items(kind=ReconciliationKind.CAPTURE_RETRY_EXHAUSTED)
        assert [i.job_id for i in items] == [1]
        notes = await storage.list_notifications(POSTER_ID)
        assert notes[-1].title == "Payment Failed"
        assert "temporarily unavailable" in notes[-1].message

    @pytest.mark.asyncio
    async def test_card_error_from_processor_is_not_retried(self, engine, processor):
        processor.create_payment_intent.side_effect = TerminalProcessorError("Your card was declined.", "card_declined")

        with pytest.raises(TerminalProcessorError):
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")

        assert processor.create_payment_intent.await_count == 1

    @pytest.mark.asyncio
    async def test_capture_compensated_when_recording_fails(self, engine, storage, processor, monkeypatch):
        original = storage.run_in_transaction

        async def failing_record(work, description="store transaction"):
            if description.startswith("record capture"):
                raise RuntimeError("disk full")
            return await original(work, description)

        monkeypatch.setattr(storage, "run_in_transaction", failing_record)

        with pytest.raises(RuntimeError):
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")

        processor.create_refund.assert_awaited_once()
        args = processor.create_refund.await_args
        assert args.args[0] == "pi_test_1"
        assert args.kwargs["idempotency_key"] == "compensate-pi_test_1"
        assert await storage.list_reconciliation_items() == []

    @pytest.mark.asyncio
    async def test_failed_compensation_is_escalated(self, engine, storage, processor, monkeypatch):
        original = storage.run_in_transaction

        async def failing_record(work, description="store transaction"):
            if description.startswith("record capture"):
                raise RuntimeError("disk full")
            return await original(work, description)

        monkeypatch.setattr(storage, "run_in_transaction", failing_record)
        processor.create_refund.side_effect = TerminalProcessorError("charge_already_refunded")

        with pytest.raises(RuntimeError):
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")

        items = await storage.list_reconciliation_items(kind=ReconciliationKind.COMPENSATION_FAILED)
        assert len(items) == 1
        assert items[0].external_reference == "pi_test_1"
        assert items[0].details["persist_error"] == "disk full"


class TestRefundEligibility:

    @pytest.mark.asyncio
    async def test_eligible_for_remaining_balance(self, engine, create_open_job):
        job = await create_open_job("100.00")

        eligibility = await engine.ledger.check_refund_eligibility(job.id)
        assert eligibility.eligible
        assert eligibility.max_refund_amount == Decimal("105.00")

        await engine.ledger.refund_payment(eligibility.payment_id, Decimal("5.00"), reason="Fee waived")
        eligibility = await engine.ledger.check_refund_eligibility(job.id)
        assert eligibility.max_refund_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_not_eligible_without_captured_payment(self, engine, processor):
        assert (await engine.ledger.check_refund_eligibility(42)).reason == "Job not found"

        processor.intent_status = "failed"
        with pytest.raises(TerminalProcessorError):
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")

        eligibility = await engine.ledger.check_refund_eligibility(1)
        assert not eligibility.eligible
        assert eligibility.reason == "Payment is failed"


class TestRefunds:

    @pytest.mark.asyncio
    async def test_partial_refunds_cannot_exceed_capture(self, engine, storage, processor, create_open_job):
        job = await create_open_job("100.00")
        payment = await storage.get_job_payment(job.id)

        first = await engine.ledger.refund_payment(payment.id, Decimal("60.00"), reason="Partial")
        assert first.status == RefundStatus.COMPLETED.value
        assert first.external_refund_id.startswith("re_test_")

        with pytest.raises(RefundLimitExceeded) as exc_info:
            await engine.ledger.refund_payment(payment.id, Decimal("50.00"), reason="Too much")
        assert exc_info.value.details["remaining"] == "45.00"

        assert processor.create_refund.await_count == 1
        assert (await storage.get_payment(payment.id)).status == PaymentStatus.COMPLETED.value

        last = await engine.ledger.refund_payment(payment.id, reason="Rest")
        assert last.amount == Decimal("45.00")
        assert (await storage.get_payment(payment.id)).status == PaymentStatus.REFUNDED.value

        with pytest.raises(RefundLimitExceeded):
            await engine.ledger.refund_payment(payment.id, Decimal("1.00"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5.00", "105.01"])
    async def test_invalid_refund_amounts(self, engine, storage, processor, create_open_job, amount):
        job = await create_open_job("100.00")
        payment = await storage.get_job_payment(job.id)

        with pytest.raises(RefundLimitExceeded):
            await engine.ledger.refund_payment(payment.id, Decimal(amount))

        processor.create_refund.assert_not_awaited()
        assert await storage.list_refunds(payment.id) == []

    @pytest.mark.asyncio
    async def test_pending_refund_reserves_balance(self, engine, storage, create_open_job):
        job = await create_open_job("100.00")
        payment = await storage.get_job_payment(job.id)

        async def add_pending(session):
            session.add(RefundRecord(
                payment_id=payment.id, job_id=job.id, amount=Decimal("100.00"),
                reason="In flight", status=RefundStatus.PENDING.value, processed_by="test",
            ))

        await storage.run_in_transaction(add_pending)

        assert await engine.ledger.get_remaining_balance(payment) == Decimal("5.00")
        with pytest.raises(RefundLimitExceeded):
            await engine.ledger.refund_payment(payment.id, Decimal("10.00"))

    @pytest.mark.asyncio
    async def test_refused_refund_releases_reservation(self, engine, storage, processor, create_open_job):
        job = await create_open_job("100.00")
        payment = await storage.get_job_payment(job.id)
        processor.create_refund.side_effect = TerminalProcessorError("charge_disputed")

        with pytest.raises(TerminalProcessorError):
            await engine.ledger.refund_payment(payment.id, Decimal("50.00"))

        refunds = await storage.list_refunds(payment.id)
        assert [r.status for r in refunds] == [RefundStatus.FAILED.value]
        assert refunds[0].error_message
        assert await engine.ledger.get_remaining_balance(payment) == Decimal("105.00")

    @pytest.mark.asyncio
    async def test_unknown_refund_outcome_keeps_reservation(self, engine, storage, processor, create_open_job):
        job = await create_open_job("100.00")
        payment = await storage.get_job_payment(job.id)
        processor.create_refund.side_effect = RetryableProcessorError("Connection timed out")

        with pytest.raises(RetryBudgetExhausted):
            await engine.ledger.refund_payment(payment.id, Decimal("50.00"))

        refunds = await storage.list_refunds(payment.id)
        assert [r.status for r in refunds] == [RefundStatus.PENDING.value]
        assert await engine.ledger.get_remaining_balance(payment) == Decimal("55.00")
        with pytest.raises(RefundLimitExceeded):
            await engine.ledger.refund_payment(payment.id, Decimal("60.00"))

    @pytest.mark.asyncio
    async def test_refund_of_uncaptured_payment_rejected(self, engine, storage, processor):
        processor.intent_status = "failed"
        with pytest.raises(TerminalProcessorError):
            await engine.jobs.create_job(POSTER_ID, "Paint fence", None, Decimal("100.00"), "pm_card_visa")
        payment = await storage.get_job_payment(1)

        with pytest.raises(ValidationError):
            await engine.ledger.refund_payment(payment.id, Decimal("10.00"))

    @pytest.mark.asyncio
    async def test_refund_cancels_pending_earning(self, engine, storage, create_completed_job):
        job = await create_completed_job("100.00")
        payment = await storage.get_job_payment(job.id)
        earning = (await storage.get_active_earnings_for_job(job.id))[0]

        await engine.ledger.refund_payment(payment.id, Decimal("10.00"), reason="Goodwill")

        assert (await storage.get_earning(earning.id)).status == EarningStatus.CANCELLED.value
        # Unpaid earnings need no follow-up
        assert await storage.list_reconciliation_items(kind=ReconciliationKind.PAID_EARNING_CANCELLED) == []


class TestRefundRecovery:

    @pytest.fixture
    def stranded_refund(self, engine, storage, processor, create_open_job):
        """A refund whose processor call timed out, left pending and reserved"""
        async def _create(amount="50.00"):
            job = await create_open_job("100.00")
            payment = await storage.get_job_payment(job.id)
            processor.create_refund.side_effect = RetryableProcessorError("Connection timed out")
            with pytest.raises(RetryBudgetExhausted):
                await engine.ledger.refund_payment(payment.id, Decimal(amount))
            processor.create_refund.side_effect = processor._create_refund
            processor.create_refund.reset_mock()
            return payment, (await storage.list_refunds(payment.id))[0]

        return _create

    @pytest.mark.asyncio
    async def test_recovery_completes_refund_with_original_key(self, engine, storage, processor, stranded_refund):
        payment, refund = await stranded_refund()

        results = await engine.ledger.recover_pending_refunds(min_age=0)

        assert results["completed"] == 1
        assert processor.create_refund.await_args.kwargs["idempotency_key"] == f"refund-{refund.id}"
        recovered = (await storage.list_refunds(payment.id))[0]
        assert recovered.status == RefundStatus.COMPLETED.value
        assert recovered.external_refund_id.startswith("re_test_")
        assert await engine.ledger.get_remaining_balance(payment) == Decimal("55.00")

        again = await engine.ledger.recover_pending_refunds(min_age=0)
        assert again["checked"] == 0
        assert processor.create_refund.await_count == 1

    @pytest.mark.asyncio
    async def test_refusal_during_recovery_releases_reservation(self, engine, storage, processor, stranded_refund):
        payment, refund = await stranded_refund()
        processor.create_refund.side_effect = TerminalProcessorError("charge_already_refunded")

        results = await engine.ledger.recover_pending_refunds(min_age=0)

        assert results["failed"] == 1
        assert (await storage.list_refunds(payment.id))[0].status == RefundStatus.FAILED.value
        assert await engine.ledger.get_remaining_balance(payment) == Decimal("105.00")

    @pytest.mark.asyncio
    async def test_processor_still_down_leaves_refund_pending(self, engine, storage, processor, stranded_refund):
        payment, refund = await stranded_refund()
        processor.create_refund.side_effect = RetryableProcessorError("Connection timed out")

        results = await engine.ledger.recover_pending_refunds(min_age=0)

        assert results["pending"] == 1
        assert (await storage.list_refunds(payment.id))[0].status == RefundStatus.PENDING.value
        assert await engine.ledger.get_remaining_balance(payment) == Decimal("55.00")

    @pytest.mark.asyncio
    async def test_recent_refund_is_left_to_its_caller(self, engine, processor, stranded_refund):
        await stranded_refund()

        results = await engine.ledger.recover_pending_refunds(min_age=3600)

        assert results["skipped"] == 1
        processor.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refund_past_replay_window_is_escalated_once(self, engine, storage, processor, events, stranded_refund):
        payment, refund = await stranded_refund()
        await storage.update_refund(refund.id, created_at=datetime.utcnow() - timedelta(days=2))

        first = await engine.ledger.recover_pending_refunds(min_age=0)
        second = await engine.ledger.recover_pending_refunds(min_age=0)

        assert first["escalated"] == 1
        assert second["escalated"] == 0
        processor.create_refund.assert_not_awaited()
        items = await storage.list_reconciliation_items(kind=ReconciliationKind.REFUND_OUTCOME_UNKNOWN)
        assert [(i.payment_id, i.external_reference) for i in items] == [(payment.id, f"refund-{refund.id}")]
        assert (await storage.list_refunds(payment.id))[0].status == RefundStatus.PENDING.value
        assert events.events_of(EngineEvent.ENGINE_ESCALATION)[-1]["kind"] == "refund_outcome_unknown"

    @pytest.mark.asyncio
    async def test_engine_start_recovers_refunds(self, engine, storage, monkeypatch, stranded_refund):
        payment, refund = await stranded_refund()
        monkeypatch.setattr(Config, "REFUND_RECOVERY_MIN_AGE", 0)

        await engine.start(monitor_loop=False)
        await engine.stop()

        assert (await storage.list_refunds(payment.id))[0].status == RefundStatus.COMPLETED.value
