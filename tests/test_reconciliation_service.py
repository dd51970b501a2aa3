"""Escalation queue for operator follow-up and processor-side reconciliation"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from models import ReconciliationKind
from services.event_channel import EngineEvent
from utils.exceptions import NotFound, RetryableProcessorError, RetryBudgetExhausted

POSTER_ID = 1001
ADMIN_ID = 9001
class TestReconciliationQueue:

    @pytest.mark.asyncio
    async def test_escalate_writes_item_and_emits(self, engine, events):
        item = await engine.reconciliation.escalate(
            ReconciliationKind.TRANSFER_FAILED, "Transfer refused", job_id=4, earning_id=7,
        )

        assert item.kind == ReconciliationKind.TRANSFER_FAILED.value
        assert item.details == {"message": "Transfer refused"}
        signals = events.events_of(EngineEvent.ENGINE_ESCALATION)
        assert len(signals) == 1
        assert signals[0]["reconciliation_item_id"] == item.id
        assert signals[0]["earning_id"] == 7

    @pytest.mark.asyncio
    async def test_resolve_removes_item_from_open_queue(self, engine):
        first = await engine.reconciliation.escalate(ReconciliationKind.TRANSFER_REVERSED, "Reversed", job_id=1)
        second = await engine.reconciliation.escalate(ReconciliationKind.ORPHAN_PROCESSOR_EVENT, "Orphan")

        resolved = await engine.reconciliation.resolve(first.id, ADMIN_ID)

        assert resolved.resolved is True
        assert resolved.resolved_at is not None
        assert [i.id for i in await engine.reconciliation.open_items()] == [second.id]
        assert await engine.reconciliation.open_items(ReconciliationKind.TRANSFER_REVERSED) == []

    @pytest.mark.asyncio
    async def test_resolve_unknown_item(self, engine):
        with pytest.raises(NotFound):
            await engine.reconciliation.resolve(999, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_store_failure_still_emits(self, engine, events, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(engine.storage, "create_reconciliation_item", broken)
        item = await engine.reconciliation.escalate(ReconciliationKind.COMPENSATION_FAILED, "Refund lost")

        assert item is None
        assert events.events_of(EngineEvent.ENGINE_ESCALATION)[0]["reconciliation_item_id"] is None


def last_day():
    end = datetime.utcnow()
    return end - timedelta(days=1), end


class TestProcessorReconciliation:

    @pytest.mark.asyncio
    async def test_captured_payments_match(self, engine, storage, processor, create_open_job):
        await create_open_job("100.00")
        await create_open_job("40.00")

        report = await engine.reconciliation.reconcile_range(*last_day())

        assert report["checked"] == 2
        assert report["matched"] == 2
        assert report["escalated"] == 0
        assert await storage.list_reconciliation_items() == []
        start, end = processor.list_payment_intents.await_args.args
        assert end - start == timedelta(days=1)

    @pytest.mark.asyncio
    async def test_charge_without_local_payment_is_escalated(self, engine, storage, processor, events):
        processor.intents.append(
            {"id": "pi_ghost", "status": "succeeded", "amount": Decimal("42.00"), "metadata": {"job_id": "12"}}
        )

        report = await engine.reconciliation.reconcile_range(*last_day())

        assert report["missing_local"] == ["pi_ghost"]
        items = await storage.list_reconciliation_items(kind=ReconciliationKind.PROCESSOR_MISSING_LOCAL)
        assert [i.external_reference for i in items] == ["pi_ghost"]
        assert items[0].details["processor_amount"] == "42.00"
        assert items[0].details["metadata"] == {"job_id": "12"}
        assert events.events_of(EngineEvent.ENGINE_ESCALATION)[-1]["kind"] == "processor_missing_local"

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_escalated(self, engine, storage, processor, create_open_job):
        job = await create_open_job("100.00")
        processor.intents[0]["amount"] = Decimal("110.00")

        report = await engine.reconciliation.reconcile_range(*last_day())

        payment = await storage.get_job_payment(job.id)
        assert report["amount_mismatch"] == [payment.external_transaction_id]
        items = await storage.list_reconciliation_items(kind=ReconciliationKind.PROCESSOR_AMOUNT_MISMATCH)
        assert [(i.payment_id, i.job_id) for i in items] == [(payment.id, job.id)]
        assert items[0].details["local_amount"] == "105.00"
        assert items[0].details["processor_amount"] == "110.00"

    @pytest.mark.asyncio
    async def test_succeeded_charge_with_unsettled_payment_is_escalated(self, engine, storage, processor):
        processor.intent_status = "processing"
        result = await engine.jobs.create_job(POSTER_ID, "Move boxes", None, Decimal("100.00"), "pm_card_threeds")
        processor.intents[-1]["status"] = "succeeded"

        report = await engine.reconciliation.reconcile_range(*last_day())

        assert report["status_mismatch"] == [result.payment.external_transaction_id]
        items = await storage.list_reconciliation_items(kind=ReconciliationKind.PROCESSOR_STATUS_MISMATCH)
        assert items[0].payment_id == result.payment.id
        assert items[0].details["local_status"] == "processing"

    @pytest.mark.asyncio
    async def test_open_discrepancy_is_not_escalated_twice(self, engine, storage, processor):
        processor.intents.append({"id": "pi_ghost", "status": "succeeded", "amount": Decimal("42.00")})

        first = await engine.reconciliation.reconcile_range(*last_day())
        second = await engine.reconciliation.reconcile_range(*last_day())

        assert first["escalated"] == 1
        assert second["escalated"] == 0
        assert second["missing_local"] == ["pi_ghost"]
        assert len(await storage.list_reconciliation_items()) == 1

    @pytest.mark.asyncio
    async def test_unsucceeded_charges_are_ignored(self, engine, processor):
        processor.intents.append({"id": "pi_declined", "status": "failed", "amount": Decimal("10.00")})
        processor.intents.append({"id": "pi_abandoned", "status": "canceled", "amount": Decimal("10.00")})

        report = await engine.reconciliation.reconcile_range(*last_day())

        assert report["checked"] == 0
        assert report["escalated"] == 0

    @pytest.mark.asyncio
    async def test_processor_outage_surfaces(self, engine, processor):
        processor.list_payment_intents.side_effect = RetryableProcessorError("Connection reset")

        with pytest.raises(RetryBudgetExhausted):
            await engine.reconciliation.reconcile_range(*last_day())
        assert processor.list_payment_intents.await_count == 3
