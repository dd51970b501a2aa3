"""Payment Status Monitor - reconciles payments whose outcome was not known at capture time"""

import asyncio
import logging
from typing import Any, Dict, Optional
from config import Config
from models import PaymentStatus, ReconciliationKind
from services.escrow_ledger import EscrowLedger
from services.event_channel import EngineEvent, EventChannel
from services.payment_processor import (
    INTENT_SUCCEEDED, INTENT_FAILED, INTENT_CANCELED, INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_CONFIRMATION, INTENT_REQUIRES_PAYMENT_METHOD,
)
from services.reconciliation_service import ReconciliationService
from services.resilient_gateway import ResilientGateway
from services.storage import EngineStorage

logger = logging.getLogger(__name__)

# Poll outcomes that leave a payment tracked and count toward escalation
UNRESOLVED_OUTCOMES = {"processing", "action_required", "error", "unknown_payment"}

SETTLED_PAYMENT_STATUSES = {
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
}


class PaymentStatusMonitor:
    """Polls the processor for tracked payments until they settle or the retry budget runs out"""

    def __init__(
        self,
        storage: EngineStorage,
        processor,
        gateway: ResilientGateway,
        ledger: EscrowLedger,
        events: EventChannel,
        reconciliation: ReconciliationService,
        max_retries: int = None,
        check_interval: float = None,
    ):
        self.storage = storage
        self.processor = processor
        self.gateway = gateway
        self.ledger = ledger
        self.events = events
        self.reconciliation = reconciliation
        self.max_retries = Config.PAYMENT_MONITOR_MAX_RETRIES if max_retries is None else max_retries
        self.check_interval = Config.PAYMENT_MONITOR_INTERVAL if check_interval is None else check_interval
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.check_interval < 0:
            raise ValueError(f"check_interval must not be negative, got {self.check_interval}")

        # external payment id -> unresolved poll count
        self.pending_payments: Dict[str, int] = {}
        self.payers: Dict[str, Optional[int]] = {}

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def track_payment(self, external_id: str, user_id: Optional[int] = None, check_now: bool = True) -> Optional[str]:
        """Start tracking a payment; by default check its status right away"""
        if external_id not in self.pending_payments:
            self.pending_payments[external_id] = 0
            self.payers[external_id] = user_id
            logger.info(f"👀 PAYMENT_MONITOR: Tracking {external_id} for user {user_id}")
        if not check_now:
            return None
        # The initial check does not count toward the retry budget
        return await self.check_payment(external_id)

    def untrack(self, external_id: str):
        self.pending_payments.pop(external_id, None)
        self.payers.pop(external_id, None)

    def is_tracking(self, external_id: str) -> bool:
        return external_id in self.pending_payments

    async def check_payment(self, external_id: str) -> str:
        """Query the processor once for a tracked payment and apply the result"""
        payment = await self.storage.get_payment_by_external_id(external_id)
        if payment is not None and payment.status in SETTLED_PAYMENT_STATUSES:
            logger.info(f"🔁 PAYMENT_MONITOR: {external_id} already settled as {payment.status}")
            self.untrack(external_id)
            return "already_settled"

        try:
            intent = await self.gateway.call_processor(
                lambda: self.processor.retrieve_payment_intent(external_id),
                description=f"status check {external_id}",
                retries=1,
            )
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR: Status check failed for {external_id}: {e}")
            await self.events.emit(
                EngineEvent.PAYMENT_MONITOR_ERROR, {"external_id": external_id, "error": str(e)}
            )
            return "error"

        return await self._apply_intent(external_id, intent, payment)

    async def _apply_intent(self, external_id: str, intent: Dict[str, Any], payment=None) -> str:
        if payment is None:
            payment = await self.storage.get_payment_by_external_id(external_id)
        if payment is None:
            logger.error(f"❌ PAYMENT_MONITOR: No payment record for {external_id}")
            return "unknown_payment"

        status = intent.get("status")
        user_id = self.payers.get(external_id, payment.user_id)

        if status == INTENT_SUCCEEDED:
            await self.ledger.confirm_capture(payment)
            self.untrack(external_id)
            logger.info(f"✅ PAYMENT_MONITOR: {external_id} succeeded")
            return "succeeded"

        if status in (INTENT_FAILED, INTENT_CANCELED):
            reason = intent.get("last_error") or f"Payment {status}"
            await self.ledger.mark_payment_failed(payment, reason)
            self.untrack(external_id)
            return "failed"

        if status in (INTENT_REQUIRES_ACTION, INTENT_REQUIRES_CONFIRMATION, INTENT_REQUIRES_PAYMENT_METHOD):
            await self.events.emit(
                EngineEvent.PAYMENT_ACTION_REQUIRED,
                {"external_id": external_id, "user_id": user_id, "payment_id": payment.id, "status": status},
            )
            return "action_required"

        return "processing"

    async def poll_once(self) -> Dict[str, Any]:
        """One monitoring cycle over every tracked payment"""
        results = {
            "checked": 0,
            "succeeded": 0,
            "failed": 0,
            "unresolved": 0,
            "escalated": 0,
            "details": [],
        }

        for external_id in list(self.pending_payments):
            if external_id not in self.pending_payments:
                continue
            results["checked"] += 1
            try:
                outcome = await self.check_payment(external_id)
            except Exception as e:
                logger.error(f"❌ PAYMENT_MONITOR: Error reconciling {external_id}: {e}")
                outcome = "error"

            detail = {"external_id": external_id, "outcome": outcome}
            if outcome == "succeeded":
                results["succeeded"] += 1
            elif outcome == "failed":
                results["failed"] += 1
            elif outcome in UNRESOLVED_OUTCOMES and external_id in self.pending_payments:
                results["unresolved"] += 1
                attempts = self.pending_payments[external_id] + 1
                self.pending_payments[external_id] = attempts
                detail["attempts"] = attempts
                if attempts >= self.max_retries:
                    await self._escalate(external_id, attempts, outcome)
                    results["escalated"] += 1
            results["details"].append(detail)

        if results["checked"]:
            logger.info(
                f"📊 PAYMENT_MONITOR: cycle checked={results['checked']} succeeded={results['succeeded']} "
                f"failed={results['failed']} unresolved={results['unresolved']} escalated={results['escalated']}"
            )
        return results

    async def _escalate(self, external_id: str, attempts: int, last_outcome: str):
        user_id = self.payers.get(external_id)
        self.untrack(external_id)
        payment = None
        try:
            payment = await self.storage.get_payment_by_external_id(external_id)
        except Exception as e:
            logger.error(f"❌ PAYMENT_MONITOR: Could not load payment {external_id} for escalation: {e}")

        logger.critical(
            f"🚨 PAYMENT_MONITOR_MAX_RETRIES: {external_id} unresolved after {attempts} polls "
            f"(last outcome {last_outcome}), escalating"
        )
        await self.reconciliation.escalate(
            ReconciliationKind.PAYMENT_MONITOR_ESCALATION,
            f"Payment {external_id} unresolved after {attempts} status checks",
            job_id=payment.job_id if payment else None,
            payment_id=payment.id if payment else None,
            external_reference=external_id,
            details={"attempts": attempts, "last_outcome": last_outcome},
        )
        await self.events.emit(
            EngineEvent.PAYMENT_ESCALATED,
            {"external_id": external_id, "user_id": user_id, "attempts": attempts,
             "payment_id": payment.id if payment else None},
        )

    async def rebuild_from_storage(self) -> int:
        """
        Re-derive tracked payments from persisted pending/processing records.

        Payments with an open monitor escalation stay with the operator until
        the reconciliation item is resolved.
        """
        async def load():
            payments = await self.storage.list_payments_by_status([PaymentStatus.PENDING, PaymentStatus.PROCESSING])
            escalated = await self.storage.list_reconciliation_items(
                resolved=False, kind=ReconciliationKind.PAYMENT_MONITOR_ESCALATION
            )
            escalated_refs = {item.external_reference for item in escalated}
            return [p for p in payments if p.external_transaction_id not in escalated_refs]

        payments = await self.gateway.run_with_timeout(
            load,
            fail_open=True,
            fallback=[],
            description="payment monitor rebuild",
        )
        restored = 0
        for payment in payments:
            if payment.external_transaction_id and payment.external_transaction_id not in self.pending_payments:
                await self.track_payment(payment.external_transaction_id, payment.user_id, check_now=False)
                restored += 1
        logger.info(f"🔄 PAYMENT_MONITOR: Rebuilt {restored} tracked payment(s) from storage")
        return restored

    async def retry_payment(self, external_id: str) -> str:
        """Re-confirm a payment intent and apply the result"""
        try:
            intent = await self.gateway.call_processor(
                lambda: self.processor.confirm_payment_intent(external_id),
                description=f"retry payment {external_id}",
            )
        except Exception as e:
            logger.error(f"❌ PAYMENT_RETRY_FAILED: {external_id}: {e}")
            await self.events.emit(EngineEvent.PAYMENT_RETRY_FAILED, {"external_id": external_id, "error": str(e)})
            raise
        if external_id not in self.pending_payments:
            payment = await self.storage.get_payment_by_external_id(external_id)
            await self.track_payment(external_id, payment.user_id if payment else None, check_now=False)
        outcome = await self._apply_intent(external_id, intent)
        logger.info(f"🔁 PAYMENT_RETRY: {external_id} outcome={outcome}")
        return outcome

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self, rebuild: bool = True):
        if self._running:
            return
        if rebuild:
            await self.rebuild_from_storage()
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"🚀 PAYMENT_MONITOR: Started (interval {self.check_interval}s, max retries {self.max_retries})")

    async def _run_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"❌ PAYMENT_MONITOR: Cycle failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.check_interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self):
        """Stop polling; a cycle already in flight finishes its processor calls"""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("🛑 PAYMENT_MONITOR: Stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "tracked": len(self.pending_payments),
            "pending_payments": dict(self.pending_payments),
            "max_retries": self.max_retries,
            "check_interval": self.check_interval,
        }
