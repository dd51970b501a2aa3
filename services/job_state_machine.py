"""
Job State Machine
Owns job status and its transitions; triggers ledger and payout side effects.

    pending -> open -> assigned -> in_progress -> completed -> closed
    canceled is reachable from pending, open, assigned and in_progress

Poster-side operations (hire, cancel, edit, close) require the poster;
start and complete require the assigned worker.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from models import Job, JobStatus, PaymentStatus, ReconciliationKind
from services.escrow_ledger import CaptureResult, EscrowLedger
from services.event_channel import EventChannel
from services.fee_service import FeeService
from services.reconciliation_service import ReconciliationService
from services.storage import EngineStorage
from utils.exceptions import InvalidTransition, Unauthorized, ValidationError
from utils.job_state_validator import JobStateValidator

logger = logging.getLogger(__name__)


class JobStateMachine:
    """Job lifecycle operations"""

    EDITABLE_FIELDS = {"title", "description", "payment_amount"}

    def __init__(
        self,
        storage: EngineStorage,
        ledger: EscrowLedger,
        payout_coordinator,
        fee_service: FeeService,
        events: EventChannel,
        reconciliation: ReconciliationService,
    ):
        self.storage = storage
        self.ledger = ledger
        self.payout_coordinator = payout_coordinator
        self.fee_service = fee_service
        self.events = events
        self.reconciliation = reconciliation

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_poster(job: Job, actor_id: int, action: str):
        if job.poster_id != actor_id:
            logger.warning(f"🚫 UNAUTHORIZED: User {actor_id} tried to {action} job {job.id} (poster {job.poster_id})")
            raise Unauthorized(
                f"Only the poster can {action} this job",
                details={"job_id": job.id, "actor_id": actor_id},
            )

    @staticmethod
    def _require_worker(job: Job, actor_id: int, action: str):
        if job.worker_id is None or job.worker_id != actor_id:
            logger.warning(f"🚫 UNAUTHORIZED: User {actor_id} tried to {action} job {job.id} (worker {job.worker_id})")
            raise Unauthorized(
                f"Only the assigned worker can {action} this job",
                details={"job_id": job.id, "actor_id": actor_id},
            )

    # ------------------------------------------------------------------
    # Creation and payment
    # ------------------------------------------------------------------

    async def create_job(
        self,
        poster_id: int,
        title: str,
        description: Optional[str],
        payment_amount,
        payment_method_ref: str,
        payer_ref: Optional[str] = None,
    ) -> CaptureResult:
        """
        Payment-first job posting: persist a pending job, then capture
        payment_amount plus fee. The job opens only once capture succeeds;
        on capture failure it stays pending and the processor error is raised.
        """
        if not title or not title.strip():
            raise ValidationError("Job title is required")
        if not payment_method_ref:
            raise ValidationError("A payment method is required to post a job")

        amount = self.fee_service.validate_job_amount(payment_amount)
        amounts = self.fee_service.calculate_job_amounts(amount)

        job = await self.storage.create_job(
            poster_id=poster_id,
            title=title.strip(),
            description=description,
            payment_amount=amounts["payment_amount"],
            service_fee=amounts["service_fee"],
            total_amount=amounts["total_amount"],
            status=JobStatus.PENDING.value,
        )
        logger.info(
            f"📝 JOB_CREATED: Job {job.id} by poster {poster_id} "
            f"${amounts['payment_amount']} + fee ${amounts['service_fee']} = ${amounts['total_amount']}"
        )
        return await self.ledger.capture_job_payment(job, payment_method_ref, payer_ref)

    async def retry_job_payment(
        self,
        job_id: int,
        poster_id: int,
        payment_method_ref: str,
        payer_ref: Optional[str] = None,
    ) -> CaptureResult:
        """Resubmit payment for a job still pending after a failed capture"""
        job = await self.storage.require_job(job_id)
        self._require_poster(job, poster_id, "pay for")
        if job.status != JobStatus.PENDING.value:
            raise InvalidTransition(
                f"Job {job_id} is {job.status}; only pending jobs accept a new payment",
                from_status=job.status,
                to_status=JobStatus.OPEN.value,
            )
        existing = await self.storage.get_job_payment(job_id)
        if existing is not None and existing.status in (
            PaymentStatus.PROCESSING.value, PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value
        ):
            raise ValidationError(
                f"Job {job_id} already has a payment in status {existing.status}",
                details={"job_id": job_id, "payment_id": existing.id},
            )
        logger.info(f"🔁 JOB_PAYMENT_RETRY: Job {job_id} resubmitted by poster {poster_id}")
        return await self.ledger.capture_job_payment(job, payment_method_ref, payer_ref)

    # ------------------------------------------------------------------
    # Work transitions
    # ------------------------------------------------------------------

    async def hire_worker(self, job_id: int, poster_id: int, worker_id: int) -> Job:
        job = await self.storage.require_job(job_id)
        JobStateValidator.ensure_transition(job, JobStatus.ASSIGNED)
        self._require_poster(job, poster_id, "hire for")
        if worker_id == job.poster_id:
            raise ValidationError("A poster cannot hire themselves", details={"job_id": job_id})
        job = await self.storage.transition_job(job_id, JobStatus.ASSIGNED, worker_id=worker_id)
        logger.info(f"🤝 WORKER_HIRED: Job {job_id} assigned to worker {worker_id}")
        return job

    async def start_job(self, job_id: int, worker_id: int) -> Job:
        job = await self.storage.require_job(job_id)
        JobStateValidator.ensure_transition(job, JobStatus.IN_PROGRESS)
        self._require_worker(job, worker_id, "start")
        job = await self.storage.transition_job(job_id, JobStatus.IN_PROGRESS, start_time=datetime.utcnow())
        logger.info(f"▶️ JOB_STARTED: Job {job_id} by worker {worker_id}")
        return job

    async def complete_job(self, job_id: int, worker_id: int) -> Job:
        """in_progress -> completed, then hand the job to the payout coordinator once"""
        job = await self.storage.require_job(job_id)
        JobStateValidator.ensure_transition(job, JobStatus.COMPLETED)
        self._require_worker(job, worker_id, "complete")
        job = await self.storage.transition_job(job_id, JobStatus.COMPLETED, completion_time=datetime.utcnow())
        logger.info(f"🏁 JOB_COMPLETED: Job {job_id} by worker {worker_id}")

        # Payout problems never roll back completion; the earning stays pending
        try:
            await self.payout_coordinator.handle_job_completion(job)
        except Exception as e:
            logger.error(f"❌ COMPLETION_PAYOUT_ERROR: Job {job_id}: {e}")
        return job

    async def close_job(self, job_id: int, poster_id: int) -> Job:
        job = await self.storage.require_job(job_id)
        JobStateValidator.ensure_transition(job, JobStatus.CLOSED)
        self._require_poster(job, poster_id, "close")
        job = await self.storage.transition_job(job_id, JobStatus.CLOSED, closed_at=datetime.utcnow())
        logger.info(f"🔒 JOB_CLOSED: Job {job_id}")
        return job

    async def cancel_job(self, job_id: int, poster_id: int, reason: str = None) -> Job:
        """
        Cancel a job and refund any captured balance.

        A failed refund does not block cancellation; it is escalated for
        reconciliation instead.
        """
        job = await self.storage.require_job(job_id)
        JobStateValidator.ensure_transition(job, JobStatus.CANCELED)
        self._require_poster(job, poster_id, "cancel")

        payment = await self.storage.get_job_payment(job_id)
        if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            try:
                remaining = await self.ledger.get_remaining_balance(payment)
                if remaining > 0:
                    await self.ledger.refund_payment(
                        payment.id,
                        reason=f"Job canceled: {reason or 'no reason given'}",
                        processed_by="job_state_machine",
                    )
            except Exception as e:
                logger.error(f"❌ CANCEL_REFUND_FAILED: Job {job_id} payment {payment.id}: {e}")
                await self.reconciliation.escalate(
                    ReconciliationKind.REFUND_FAILED_ON_CANCEL,
                    f"Refund failed while canceling job {job_id}",
                    job_id=job_id,
                    payment_id=payment.id,
                    external_reference=payment.external_transaction_id,
                    details={"error": str(e)},
                )

        job = await self.storage.transition_job(
            job_id, JobStatus.CANCELED, canceled_at=datetime.utcnow(), cancel_reason=reason, worker_id=None
        )
        logger.info(f"🚫 JOB_CANCELED: Job {job_id} by poster {poster_id}: {reason}")
        return job

    async def edit_job(self, job_id: int, poster_id: int, **changes) -> Job:
        """Edit job details; amounts are fixed once payment has been captured"""
        job = await self.storage.require_job(job_id)
        self._require_poster(job, poster_id, "edit")

        if JobStatus(job.status) not in JobStateValidator.EDITABLE_STATES:
            raise InvalidTransition(
                f"Job {job_id} is {job.status} and can no longer be edited",
                from_status=job.status,
                to_status=job.status,
            )

        unknown = set(changes) - self.EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")

        updates: Dict[str, Any] = {}
        if "title" in changes:
            title = (changes["title"] or "").strip()
            if not title:
                raise ValidationError("Job title is required")
            updates["title"] = title
        if "description" in changes:
            updates["description"] = changes["description"]

        if "payment_amount" in changes:
            payment = await self.storage.get_job_payment(job_id)
            if job.status != JobStatus.PENDING.value or (
                payment is not None and payment.status != PaymentStatus.FAILED.value
            ):
                raise ValidationError(
                    "Payment amount cannot change after payment has been submitted",
                    details={"job_id": job_id},
                )
            amounts = self.fee_service.calculate_job_amounts(
                self.fee_service.validate_job_amount(changes["payment_amount"])
            )
            updates.update(
                payment_amount=amounts["payment_amount"],
                service_fee=amounts["service_fee"],
                total_amount=amounts["total_amount"],
            )

        if not updates:
            return job
        job = await self.storage.update_job(job_id, **updates)
        logger.info(f"✏️ JOB_EDITED: Job {job_id} fields={sorted(updates)}")
        return job

    async def transition(self, job_id: int, actor_id: int, target_status: JobStatus, **kwargs) -> Job:
        """
        Dispatch a requested status change to the matching operation.

        A pending job becomes open only through payment capture: the OPEN target
        resubmits payment and needs payment_method_ref (payer_ref optional). The
        returned job stays pending while that payment is still processing.
        """
        target = JobStatus(target_status)
        if target == JobStatus.ASSIGNED:
            if "worker_id" not in kwargs:
                raise ValidationError("worker_id is required to assign a job")
            return await self.hire_worker(job_id, actor_id, kwargs["worker_id"])
        if target == JobStatus.IN_PROGRESS:
            return await self.start_job(job_id, actor_id)
        if target == JobStatus.COMPLETED:
            return await self.complete_job(job_id, actor_id)
        if target == JobStatus.CLOSED:
            return await self.close_job(job_id, actor_id)
        if target == JobStatus.CANCELED:
            return await self.cancel_job(job_id, actor_id, kwargs.get("reason"))

        if target == JobStatus.OPEN:
            job = await self.storage.require_job(job_id)
            if job.status == JobStatus.PENDING.value:
                if not kwargs.get("payment_method_ref"):
                    raise ValidationError(
                        f"Job {job_id} is opened by payment capture; payment_method_ref is required",
                        details={"job_id": job_id},
                    )
                result = await self.retry_job_payment(
                    job_id, actor_id, kwargs["payment_method_ref"], kwargs.get("payer_ref")
                )
                return result.job
            raise InvalidTransition(
                f"Job {job_id} cannot be moved from {job.status} to open",
                from_status=job.status,
                to_status=target.value,
            )

        # pending is only the initial status
        job = await self.storage.require_job(job_id)
        raise InvalidTransition(
            f"Job {job_id} cannot be moved to {target.value} directly",
            from_status=job.status,
            to_status=target.value,
        )
