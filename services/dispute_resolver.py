"""
Dispute Resolver
Post-completion disputes between poster and worker. Refunds ordered by an
admin go through the escrow ledger against the job's original payment, which
also cancels the worker's earning.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional
from models import (
    Dispute, DisputeStatus, DisputeType, Job, JobStatus, PaymentStatus, RefundRecord,
    RefundStatus,
)
from services.escrow_ledger import EscrowLedger
from services.event_channel import EventChannel
from services.fee_service import quantize_money
from services.notification_service import NotificationService
from services.resilient_gateway import ResilientGateway
from services.storage import EngineStorage
from utils.exceptions import DuplicateOperation, InvalidTransition, Unauthorized, ValidationError
from utils.job_state_validator import DisputeStateValidator

logger = logging.getLogger(__name__)


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution"""

    dispute: Dispute
    refund: Optional[RefundRecord] = None

    @property
    def refunded_amount(self) -> Decimal:
        return quantize_money(self.refund.amount) if self.refund is not None else Decimal("0.00")


class DisputeResolver:
    """Open, investigate, resolve and close job disputes"""

    def __init__(
        self,
        storage: EngineStorage,
        ledger: EscrowLedger,
        gateway: ResilientGateway,
        notifications: NotificationService,
        events: EventChannel,
    ):
        self.storage = storage
        self.ledger = ledger
        self.gateway = gateway
        self.notifications = notifications
        self.events = events

    @staticmethod
    def _other_party(job: Job, user_id: int) -> Optional[int]:
        return job.worker_id if user_id == job.poster_id else job.poster_id

    async def _notify_parties(self, job: Job, title: str, message: str, dispute_id: int, exclude: int = None):
        for user_id in (job.poster_id, job.worker_id):
            if user_id is None or user_id == exclude:
                continue
            await self.notifications.notify(user_id, title, message, "dispute", "dispute", dispute_id)

    async def open_dispute(
        self,
        job_id: int,
        reported_by: int,
        dispute_type: DisputeType,
        description: str,
    ) -> Dispute:
        """Raise a dispute on a completed job (poster or assigned worker only)"""
        job = await self.storage.require_job(job_id)
        if reported_by not in (job.poster_id, job.worker_id):
            logger.warning(f"🚫 UNAUTHORIZED_DISPUTE: User {reported_by} is not a party to job {job_id}")
            raise Unauthorized(
                "Only the poster or the assigned worker can open a dispute",
                details={"job_id": job_id, "actor_id": reported_by},
            )
        if job.status != JobStatus.COMPLETED.value:
            raise InvalidTransition(
                f"Disputes can only be opened on completed jobs (job {job_id} is {job.status})",
                from_status=job.status,
                to_status=DisputeStatus.OPEN.value,
                details={"job_id": job_id},
            )
        if not description or not description.strip():
            raise ValidationError("A dispute description is required")
        try:
            dispute_type = DisputeType(dispute_type)
        except ValueError:
            raise ValidationError(f"Unknown dispute type: {dispute_type}", details={"job_id": job_id})

        # Fail-closed: without an answer we do not risk a second dispute
        existing = await self.gateway.run_with_timeout(
            lambda: self.storage.get_active_dispute_for_job(job_id),
            fail_open=False,
            description=f"active dispute lookup for job {job_id}",
        )
        if existing is not None:
            raise DuplicateOperation(
                f"Job {job_id} already has an open dispute (#{existing.id})",
                details={"job_id": job_id, "dispute_id": existing.id},
            )

        dispute = await self.storage.create_dispute(
            job_id=job_id,
            reported_by=reported_by,
            type=dispute_type.value,
            description=description.strip(),
            status=DisputeStatus.OPEN.value,
        )
        logger.info(f"⚖️ DISPUTE_OPENED: #{dispute.id} job {job_id} by user {reported_by} ({dispute_type.value})")

        await self.notifications.notify(
            self._other_party(job, reported_by),
            "Dispute Opened",
            f"A dispute has been opened on '{job.title}'. Our team will review it.",
            "dispute",
            "dispute",
            dispute.id,
        )
        return dispute

    async def start_investigation(self, dispute_id: int, admin_id: int) -> Dispute:
        dispute = await self.storage.transition_dispute(dispute_id, DisputeStatus.INVESTIGATING)
        logger.info(f"🔍 DISPUTE_INVESTIGATING: #{dispute_id} by admin {admin_id}")
        return dispute

    async def resolve_dispute(
        self,
        dispute_id: int,
        admin_id: int,
        resolution: str,
        refund_amount: Optional[Decimal] = None,
    ) -> ResolutionResult:
        """
        Resolve a dispute, optionally refunding the poster.

        The refund is issued before the dispute is marked resolved, so a
        refused refund leaves the dispute open for another attempt. A refund
        still awaiting the processor blocks a second one for the same dispute.
        """
        dispute = await self.storage.require_dispute(dispute_id)
        DisputeStateValidator.ensure_transition(dispute, DisputeStatus.RESOLVED)
        if not resolution or not resolution.strip():
            raise ValidationError("Resolution text is required", details={"dispute_id": dispute_id})

        job = await self.storage.require_job(dispute.job_id)
        refund = None
        amount = None
        if refund_amount is not None:
            amount = quantize_money(refund_amount)
            payment = await self.storage.get_job_payment(job.id)
            if payment is None or payment.status not in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                raise ValidationError(
                    f"Job {job.id} has no captured payment to refund",
                    details={"dispute_id": dispute_id, "job_id": job.id},
                )
            earlier = [
                r for r in await self.storage.list_refunds(payment.id)
                if r.dispute_id == dispute_id and r.status != RefundStatus.FAILED.value
            ]
            if earlier and earlier[-1].status == RefundStatus.PENDING.value:
                raise DuplicateOperation(
                    f"Refund #{earlier[-1].id} for dispute #{dispute_id} is still awaiting the processor",
                    details={"dispute_id": dispute_id, "refund_id": earlier[-1].id},
                )
            if earlier:
                # Completed by refund recovery after an earlier attempt timed out
                refund = earlier[-1]
                amount = quantize_money(refund.amount)
            else:
                refund = await self.ledger.refund_payment(
                    payment.id,
                    amount,
                    reason=f"Dispute #{dispute_id} resolution",
                    processed_by=f"admin:{admin_id}",
                    dispute_id=dispute_id,
                )

        dispute = await self.storage.transition_dispute(
            dispute_id,
            DisputeStatus.RESOLVED,
            resolution=resolution.strip(),
            refund_amount=amount,
            resolved_by=admin_id,
            resolved_at=datetime.utcnow(),
        )
        logger.info(
            f"✅ DISPUTE_RESOLVED: #{dispute_id} job {job.id} by admin {admin_id}"
            + (f" with refund ${amount}" if amount is not None else "")
        )

        message = f"The dispute on '{job.title}' has been resolved: {dispute.resolution}"
        if amount is not None:
            message += f" A refund of ${amount} has been issued."
        await self._notify_parties(job, "Dispute Status Updated", message, dispute_id)
        return ResolutionResult(dispute=dispute, refund=refund)

    async def close_dispute(self, dispute_id: int, admin_id: int, note: str = None) -> Dispute:
        """Close a dispute without a resolution"""
        dispute = await self.storage.transition_dispute(
            dispute_id,
            DisputeStatus.CLOSED,
            resolved_by=admin_id,
            resolved_at=datetime.utcnow(),
        )
        job = await self.storage.require_job(dispute.job_id)
        logger.info(f"📁 DISPUTE_CLOSED: #{dispute_id} by admin {admin_id}")

        message = f"The dispute on '{job.title}' has been closed."
        if note:
            message += f" {note}"
        await self._notify_parties(job, "Dispute Status Updated", message, dispute_id)
        return dispute
