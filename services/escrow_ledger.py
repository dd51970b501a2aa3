"""
Escrow Ledger
Payment-first capture, fee split and refund bookkeeping for jobs.

A job only becomes visible (open) after its payment is captured. Refunds are
reserved against the captured balance before the processor is called, so
concurrent refunds can never exceed what was captured.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from config import Config
from models import (
    Job, JobStatus, PaymentRecord, PaymentStatus, PaymentType, Earning, EarningStatus,
    RefundRecord, RefundStatus, ReconciliationKind,
)
from services.event_channel import EngineEvent, EventChannel
from services.fee_service import FeeService, quantize_money
from services.notification_service import NotificationService
from services.payment_processor import (
    INTENT_SUCCEEDED, INTENT_FAILED, INTENT_CANCELED, INTENT_REQUIRES_ACTION, PENDING_INTENT_STATUSES,
)
from services.reconciliation_service import ReconciliationService
from services.resilient_gateway import ResilientGateway
from services.storage import EngineStorage
from utils.exceptions import (
    NotFound, ProcessorError, RefundLimitExceeded, RetryBudgetExhausted, TerminalProcessorError,
    ValidationError,
)
from utils.job_state_validator import JobStateValidator

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    """Outcome of a job payment capture"""
    status: str                      # completed | processing
    job: Job
    payment: PaymentRecord
    client_secret: Optional[str] = None
    requires_action: bool = False

    @property
    def is_captured(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value


@dataclass
class RefundEligibility:
    eligible: bool
    reason: str
    max_refund_amount: Decimal = Decimal("0.00")
    payment_id: Optional[int] = None


def captured_amount(payment: PaymentRecord) -> Decimal:
    """Total captured from the poster: job amount plus platform fee"""
    return quantize_money(payment.amount) + quantize_money(payment.service_fee or 0)


class EscrowLedger:
    """Capture, refund and balance bookkeeping for job payments"""

    def __init__(
        self,
        storage: EngineStorage,
        processor,
        gateway: ResilientGateway,
        fee_service: FeeService,
        notifications: NotificationService,
        events: EventChannel,
        reconciliation: ReconciliationService,
    ):
        self.storage = storage
        self.processor = processor
        self.gateway = gateway
        self.fee_service = fee_service
        self.notifications = notifications
        self.events = events
        self.reconciliation = reconciliation
        self.payment_monitor = None

    def attach_monitor(self, monitor):
        """Payments whose outcome is not known at capture time are handed to the monitor"""
        self.payment_monitor = monitor

    def calculate_job_amounts(self, payment_amount) -> Dict[str, Any]:
        return self.fee_service.calculate_job_amounts(payment_amount)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_job_payment(
        self,
        job: Job,
        payment_method_ref: str,
        payer_ref: Optional[str] = None,
    ) -> CaptureResult:
        """
        Charge the poster job.total_amount. On success the job moves pending -> open.

        Raises:
            TerminalProcessorError: card declined or intent failed
            RetryBudgetExhausted: processor unreachable after bounded retries
        """
        if job.status != JobStatus.PENDING.value:
            raise ValidationError(
                f"Job {job.id} is {job.status}; payment can only be captured for pending jobs",
                details={"job_id": job.id},
            )

        total = quantize_money(job.total_amount)
        idempotency_key = f"job-{job.id}-capture-{uuid.uuid4().hex[:12]}"
        metadata = {"job_id": job.id, "poster_id": job.poster_id, "type": PaymentType.JOB_PAYMENT.value}

        try:
            intent = await self.gateway.call_processor(
                lambda: self.processor.create_payment_intent(
                    amount=total,
                    payer_ref=payer_ref,
                    payment_method_ref=payment_method_ref,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                ),
                description=f"capture job {job.id}",
            )
        except (ProcessorError, RetryBudgetExhausted) as e:
            reason = self.gateway.classifier.describe_processor_failure(
                e.last_error if isinstance(e, RetryBudgetExhausted) and e.last_error else e
            )
            logger.error(f"❌ CAPTURE_FAILED: Job {job.id} ${total}: {e}")
            await self.notifications.payment_failed(job.poster_id, job.id, reason)
            await self.events.emit(
                EngineEvent.PAYMENT_FAILED, {"job_id": job.id, "reason": reason, "stage": "capture"}
            )
            if isinstance(e, RetryBudgetExhausted):
                await self.reconciliation.escalate(
                    ReconciliationKind.CAPTURE_RETRY_EXHAUSTED,
                    f"Capture for job {job.id} could not reach the processor",
                    job_id=job.id,
                    details={"idempotency_key": idempotency_key, "amount": str(total)},
                )
            raise

        status = intent.get("status")
        intent_id = intent.get("id")

        if status == INTENT_SUCCEEDED:
            return await self._record_successful_capture(job, intent_id)

        if status in PENDING_INTENT_STATUSES:
            payment = await self.storage.create_payment(
                job_id=job.id,
                user_id=job.poster_id,
                amount=quantize_money(job.payment_amount),
                service_fee=quantize_money(job.service_fee),
                external_transaction_id=intent_id,
                status=PaymentStatus.PROCESSING.value,
                type=PaymentType.JOB_PAYMENT.value,
            )
            requires_action = status == INTENT_REQUIRES_ACTION
            logger.info(f"⏳ CAPTURE_PENDING: Job {job.id} intent {intent_id} status={status}")
            if requires_action:
                await self.events.emit(
                    EngineEvent.PAYMENT_ACTION_REQUIRED,
                    {"job_id": job.id, "payment_id": payment.id, "external_id": intent_id},
                )
            if self.payment_monitor is not None:
                await self.payment_monitor.track_payment(intent_id, job.poster_id, check_now=False)
            return CaptureResult(
                status=PaymentStatus.PROCESSING.value,
                job=job,
                payment=payment,
                client_secret=intent.get("client_secret"),
                requires_action=requires_action,
            )

        # failed / canceled
        reason = intent.get("last_error") or f"Payment {status}"
        await self.storage.create_payment(
            job_id=job.id,
            user_id=job.poster_id,
            amount=quantize_money(job.payment_amount),
            service_fee=quantize_money(job.service_fee),
            external_transaction_id=intent_id,
            status=PaymentStatus.FAILED.value,
            type=PaymentType.JOB_PAYMENT.value,
            failure_reason=reason,
            failed_at=datetime.utcnow(),
        )
        logger.error(f"❌ CAPTURE_DECLINED: Job {job.id} intent {intent_id}: {reason}")
        await self.notifications.payment_failed(job.poster_id, job.id, reason)
        await self.events.emit(
            EngineEvent.PAYMENT_FAILED, {"job_id": job.id, "external_id": intent_id, "reason": reason}
        )
        raise TerminalProcessorError(reason, processor_code=status, details={"job_id": job.id})

    async def _record_successful_capture(self, job: Job, intent_id: str) -> CaptureResult:
        """Persist the completed PaymentRecord and open the job in one transaction"""
        async def work(session: AsyncSession):
            result = await session.execute(select(Job).where(Job.id == job.id).with_for_update())
            locked_job = result.scalar_one_or_none()
            if locked_job is None:
                raise NotFound(f"Job {job.id} not found", details={"job_id": job.id})
            JobStateValidator.validate_and_transition(locked_job, JobStatus.OPEN)
            payment = PaymentRecord(
                job_id=locked_job.id,
                user_id=locked_job.poster_id,
                amount=quantize_money(locked_job.payment_amount),
                service_fee=quantize_money(locked_job.service_fee),
                external_transaction_id=intent_id,
                status=PaymentStatus.COMPLETED.value,
                type=PaymentType.JOB_PAYMENT.value,
                completed_at=datetime.utcnow(),
            )
            session.add(payment)
            await session.flush()
            return locked_job, payment

        try:
            opened_job, payment = await self.storage.run_in_transaction(work, f"record capture for job {job.id}")
        except Exception as e:
            # Money moved but the job could not be opened: give it back
            logger.error(f"❌ CAPTURE_PERSIST_FAILED: Job {job.id} intent {intent_id}: {e}")
            await self._compensate_capture(job, intent_id, e)
            raise

        logger.info(
            f"✅ CAPTURE_COMPLETED: Job {job.id} ${payment.amount} + fee ${payment.service_fee} "
            f"(intent {intent_id})"
        )
        await self.notifications.job_posted(opened_job.poster_id, opened_job.id, opened_job.title)
        await self.events.emit(
            EngineEvent.PAYMENT_SUCCEEDED,
            {"job_id": opened_job.id, "payment_id": payment.id, "external_id": intent_id},
        )
        return CaptureResult(status=PaymentStatus.COMPLETED.value, job=opened_job, payment=payment)

    async def _compensate_capture(self, job: Job, intent_id: str, cause: BaseException):
        try:
            await self.gateway.call_processor(
                lambda: self.processor.create_refund(
                    intent_id,
                    None,
                    metadata={"job_id": job.id, "reason": "job_persistence_failed"},
                    idempotency_key=f"compensate-{intent_id}",
                ),
                description=f"compensating refund for job {job.id}",
            )
            logger.warning(f"↩️ CAPTURE_COMPENSATED: Full refund issued for intent {intent_id} (job {job.id})")
        except Exception as refund_error:
            await self.reconciliation.escalate(
                ReconciliationKind.COMPENSATION_FAILED,
                f"Captured payment for job {job.id} could not be recorded or refunded",
                job_id=job.id,
                external_reference=intent_id,
                details={"persist_error": str(cause), "refund_error": str(refund_error)},
            )

    async def confirm_capture(self, payment: PaymentRecord) -> PaymentRecord:
        """Late success for a processing payment: mark completed and open the job (idempotent)"""
        async def work(session: AsyncSession):
            result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.id == payment.id).with_for_update()
            )
            locked = result.scalar_one_or_none()
            if locked is None:
                raise NotFound(f"Payment {payment.id} not found", details={"payment_id": payment.id})
            if locked.status != PaymentStatus.PENDING.value and locked.status != PaymentStatus.PROCESSING.value:
                return locked, None, False

            locked.status = PaymentStatus.COMPLETED.value
            locked.completed_at = datetime.utcnow()
            locked.failure_reason = None

            job = None
            if locked.job_id is not None and locked.type == PaymentType.JOB_PAYMENT.value:
                job_result = await session.execute(select(Job).where(Job.id == locked.job_id).with_for_update())
                job = job_result.scalar_one_or_none()
                if job is not None and job.status == JobStatus.PENDING.value:
                    JobStateValidator.validate_and_transition(job, JobStatus.OPEN)
            await session.flush()
            return locked, job, True

        confirmed, job, changed = await self.storage.run_in_transaction(
            work, f"confirm capture for payment {payment.id}"
        )
        if not changed:
            logger.info(f"🔁 CAPTURE_ALREADY_SETTLED: Payment {confirmed.id} status={confirmed.status}")
            return confirmed

        logger.info(f"✅ CAPTURE_CONFIRMED: Payment {confirmed.id} (intent {confirmed.external_transaction_id})")
        if job is not None and job.status == JobStatus.CANCELED.value:
            # Job was canceled while the payment was in flight
            try:
                await self.refund_payment(
                    confirmed.id, reason="Job canceled before payment settled", processed_by="escrow_ledger"
                )
            except Exception as e:
                logger.error(f"❌ LATE_CAPTURE_REFUND_FAILED: Job {job.id} payment {confirmed.id}: {e}")
                await self.reconciliation.escalate(
                    ReconciliationKind.REFUND_FAILED_ON_CANCEL,
                    f"Payment settled after job {job.id} was canceled and could not be refunded",
                    job_id=job.id,
                    payment_id=confirmed.id,
                    external_reference=confirmed.external_transaction_id,
                    details={"error": str(e)},
                )
        elif job is not None and job.status == JobStatus.OPEN.value:
            await self.notifications.job_posted(job.poster_id, job.id, job.title)

        await self.events.emit(
            EngineEvent.PAYMENT_SUCCEEDED,
            {"job_id": confirmed.job_id, "payment_id": confirmed.id, "external_id": confirmed.external_transaction_id},
        )
        return confirmed

    async def mark_payment_failed(self, payment: PaymentRecord, reason: str) -> PaymentRecord:
        """Processor reported failure for a pending/processing payment (idempotent)"""
        if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value):
            return payment
        updated = await self.storage.update_payment(
            payment.id,
            status=PaymentStatus.FAILED.value,
            failure_reason=reason,
            failed_at=datetime.utcnow(),
        )
        logger.error(f"❌ PAYMENT_FAILED: Payment {payment.id} (intent {payment.external_transaction_id}): {reason}")
        if updated.type == PaymentType.JOB_PAYMENT.value and updated.job_id is not None:
            await self.notifications.payment_failed(updated.user_id, updated.job_id, reason)
        await self.events.emit(
            EngineEvent.PAYMENT_FAILED,
            {"job_id": updated.job_id, "payment_id": updated.id,
             "external_id": updated.external_transaction_id, "reason": reason},
        )
        return updated

    # ------------------------------------------------------------------
    # Balances and refunds
    # ------------------------------------------------------------------

    async def get_remaining_balance(self, payment: PaymentRecord) -> Decimal:
        """Captured amount not yet refunded (pending refunds count as reserved)"""
        refunded = await self.storage.get_refunded_total(payment.id, include_pending=True)
        return max(captured_amount(payment) - refunded, Decimal("0.00"))

    async def check_refund_eligibility(self, job_id: int) -> RefundEligibility:
        job = await self.storage.get_job(job_id)
        if job is None:
            return RefundEligibility(False, "Job not found")

        payment = await self.storage.get_job_payment(job_id)
        if payment is None:
            return RefundEligibility(False, "No payment found for this job")
        if payment.status == PaymentStatus.REFUNDED.value:
            return RefundEligibility(False, "Payment has already been fully refunded", payment_id=payment.id)
        if payment.status != PaymentStatus.COMPLETED.value:
            return RefundEligibility(False, f"Payment is {payment.status}", payment_id=payment.id)

        remaining = await self.get_remaining_balance(payment)
        if remaining <= 0:
            return RefundEligibility(False, "No refundable balance remains", payment_id=payment.id)
        return RefundEligibility(True, "Eligible for refund", max_refund_amount=remaining, payment_id=payment.id)

    async def refund_payment(
        self,
        payment_id: int,
        amount: Optional[Decimal] = None,
        reason: str = "Refund",
        processed_by: str = "system",
        dispute_id: Optional[int] = None,
    ) -> RefundRecord:
        """
        Refund `amount` (default: remaining balance) of a captured payment.

        Raises:
            RefundLimitExceeded: amount <= 0 or above the remaining balance (no state change)
            TerminalProcessorError: processor refused; RefundRecord marked failed
            RetryBudgetExhausted: outcome unknown; RefundRecord stays pending and reserved
        """
        requested = quantize_money(amount) if amount is not None else None

        async def reserve(session: AsyncSession):
            result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.id == payment_id).with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise NotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
            if payment.status == PaymentStatus.REFUNDED.value:
                raise RefundLimitExceeded(
                    f"Payment {payment_id} has already been fully refunded",
                    details={"payment_id": payment_id, "remaining": "0.00"},
                )
            if payment.status != PaymentStatus.COMPLETED.value or not payment.external_transaction_id:
                raise ValidationError(
                    f"Payment {payment_id} is {payment.status} and cannot be refunded",
                    details={"payment_id": payment_id},
                )

            remaining = captured_amount(payment) - await self.storage.refunded_total(session, payment_id)
            refund_amount = remaining if requested is None else requested
            if refund_amount <= 0 or refund_amount > remaining:
                raise RefundLimitExceeded(
                    f"Refund ${refund_amount} exceeds remaining balance ${remaining}",
                    details={"payment_id": payment_id, "requested": str(refund_amount), "remaining": str(remaining)},
                )

            refund = RefundRecord(
                payment_id=payment.id,
                job_id=payment.job_id,
                dispute_id=dispute_id,
                amount=refund_amount,
                reason=reason,
                status=RefundStatus.PENDING.value,
                processed_by=processed_by,
            )
            session.add(refund)
            await session.flush()
            return payment, refund

        payment, refund = await self.storage.run_in_transaction(reserve, f"reserve refund on payment {payment_id}")
        logger.info(f"🔒 REFUND_RESERVED: #{refund.id} ${refund.amount} on payment {payment.id}")
        return await self._submit_refund(payment, refund)

    async def _submit_refund(self, payment: PaymentRecord, refund: RefundRecord) -> RefundRecord:
        """
        Send a reserved refund to the processor and settle it.

        The key is fixed per RefundRecord, so a resubmission after a crash or
        timeout cannot refund twice. A refusal releases the reservation; an
        unreachable processor leaves the refund pending for recover_pending_refunds.
        """
        dispute_id = refund.dispute_id
        try:
            processor_refund = await self.gateway.call_processor(
                lambda: self.processor.create_refund(
                    payment.external_transaction_id,
                    quantize_money(refund.amount),
                    metadata={"job_id": payment.job_id, "refund_id": refund.id, "dispute_id": dispute_id or ""},
                    idempotency_key=f"refund-{refund.id}",
                ),
                description=f"refund {refund.id}",
            )
        except Exception as e:
            if not isinstance(e, ProcessorError) or e.retryable:
                logger.error(f"⏳ REFUND_OUTCOME_UNKNOWN: #{refund.id} on payment {payment.id} stays reserved: {e}")
                raise
            await self.storage.update_refund(refund.id, status=RefundStatus.FAILED.value, error_message=str(e))
            logger.error(f"❌ REFUND_FAILED: #{refund.id} on payment {payment.id}: {e}")
            raise

        try:
            refund, payment, cancelled = await self._finalize_refund(refund.id, processor_refund.get("id"))
        except Exception as e:
            await self.reconciliation.escalate(
                ReconciliationKind.REFUND_FINALIZE_FAILED,
                f"Refund {refund.id} succeeded at the processor but could not be recorded",
                job_id=payment.job_id,
                payment_id=payment.id,
                external_reference=processor_refund.get("id"),
                details={"error": str(e), "amount": str(refund.amount)},
            )
            raise

        for earning in cancelled:
            if earning["was_paid"]:
                await self.reconciliation.escalate(
                    ReconciliationKind.PAID_EARNING_CANCELLED,
                    f"Earning {earning['id']} was already transferred before refund {refund.id}",
                    job_id=payment.job_id,
                    payment_id=payment.id,
                    earning_id=earning["id"],
                    external_reference=earning["transfer_id"],
                )

        logger.info(
            f"✅ REFUND_COMPLETED: #{refund.id} ${refund.amount} on payment {payment.id} "
            f"(payment status {payment.status})"
        )
        await self.events.emit(
            EngineEvent.REFUND_COMPLETED,
            {"refund_id": refund.id, "payment_id": payment.id, "job_id": payment.job_id,
             "amount": str(refund.amount), "dispute_id": dispute_id},
        )
        return refund

    async def _finalize_refund(self, refund_id: int, external_refund_id: Optional[str]):
        async def work(session: AsyncSession):
            refund = await session.get(RefundRecord, refund_id)
            refund.status = RefundStatus.COMPLETED.value
            refund.external_refund_id = external_refund_id
            refund.completed_at = datetime.utcnow()
            await session.flush()

            result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.id == refund.payment_id).with_for_update()
            )
            payment = result.scalar_one()
            completed_total = await self.storage.refunded_total(session, payment.id, include_pending=False)
            if completed_total >= captured_amount(payment):
                payment.status = PaymentStatus.REFUNDED.value

            cancelled = []
            if payment.job_id is not None:
                earnings = await session.execute(
                    select(Earning).where(
                        Earning.job_id == payment.job_id,
                        Earning.status != EarningStatus.CANCELLED.value,
                    )
                )
                for earning in earnings.scalars().all():
                    cancelled.append({
                        "id": earning.id,
                        "was_paid": earning.status == EarningStatus.PAID.value,
                        "transfer_id": earning.transfer_id,
                    })
                    earning.status = EarningStatus.CANCELLED.value
                    logger.warning(f"🚫 EARNING_CANCELLED: Earning {earning.id} cancelled by refund {refund.id}")
            await session.flush()
            return refund, payment, cancelled

        return await self.storage.run_in_transaction(work, f"finalize refund {refund_id}")

    async def recover_pending_refunds(self, min_age: float = None, replay_window: float = None) -> Dict[str, int]:
        """
        Re-drive refunds left pending by a crash or an unreachable processor.

        Each refund is resubmitted under its original idempotency key, so the
        processor returns the first outcome instead of refunding twice. Refunds
        older than the key retention window can no longer be replayed safely and
        go to the reconciliation queue while keeping their reservation.
        """
        min_age = Config.REFUND_RECOVERY_MIN_AGE if min_age is None else min_age
        replay_window = Config.REFUND_REPLAY_WINDOW if replay_window is None else replay_window
        results = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "escalated": 0, "skipped": 0}

        refunds = await self.storage.list_refunds_by_status(RefundStatus.PENDING)
        if not refunds:
            return results
        open_items = await self.storage.list_reconciliation_items(
            resolved=False, kind=ReconciliationKind.REFUND_OUTCOME_UNKNOWN
        )
        escalated_refs = {item.external_reference for item in open_items}
        now = datetime.utcnow()

        for refund in refunds:
            created_at = refund.created_at
            if created_at is not None and created_at.tzinfo is not None:
                created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
            age = (now - created_at).total_seconds() if created_at is not None else replay_window + 1
            if age < min_age:
                results["skipped"] += 1
                continue

            results["checked"] += 1
            reference = f"refund-{refund.id}"
            if age > replay_window:
                if reference not in escalated_refs:
                    await self.reconciliation.escalate(
                        ReconciliationKind.REFUND_OUTCOME_UNKNOWN,
                        f"Refund {refund.id} is still pending after the idempotency window",
                        job_id=refund.job_id,
                        payment_id=refund.payment_id,
                        external_reference=reference,
                        details={"amount": str(refund.amount), "age_seconds": int(age)},
                    )
                    escalated_refs.add(reference)
                    results["escalated"] += 1
                continue

            payment = await self.storage.get_payment(refund.payment_id)
            logger.info(f"🔁 REFUND_RECOVERY: Resubmitting refund #{refund.id} on payment {refund.payment_id}")
            try:
                await self._submit_refund(payment, refund)
                results["completed"] += 1
            except ProcessorError as e:
                if e.retryable:
                    results["pending"] += 1
                else:
                    results["failed"] += 1
            except Exception as e:
                logger.warning(f"⚠️ REFUND_RECOVERY: Refund #{refund.id} still pending: {e}")
                results["pending"] += 1

        logger.info(
            f"📊 REFUND_RECOVERY: checked={results['checked']} completed={results['completed']} "
            f"failed={results['failed']} pending={results['pending']} escalated={results['escalated']}"
        )
        return results
