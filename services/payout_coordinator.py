"""
Payout Coordinator
Creates the worker's earning exactly once per completed job and transfers the
net proceeds to the worker's payout account.

Exactly-once is enforced by the storage layer: a partial unique index on
(job_id, worker_id) for non-cancelled earnings turns a concurrent duplicate
insert into DuplicateOperation, which is treated as "already handled".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from models import Earning, EarningStatus, Job, PayoutAccount, PayoutAccountStatus, ReconciliationKind
from services.event_channel import EngineEvent, EventChannel
from services.fee_service import FeeService
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.resilient_gateway import ResilientGateway
from services.storage import EngineStorage
from utils.exceptions import (
    DuplicateOperation, NotFound, ProcessorError, RetryBudgetExhausted, TerminalProcessorError, ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    """Outcome of a payout attempt for one earning"""
    earning: Earning
    status: str
    created: bool = False
    transfer_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.status == EarningStatus.PAID.value


def derive_account_status(account_info: Dict[str, Any]) -> PayoutAccountStatus:
    """Map processor account flags to a payout account status"""
    requirements = account_info.get("requirements") or {}
    if account_info.get("charges_enabled") and account_info.get("payouts_enabled"):
        return PayoutAccountStatus.ACTIVE
    if requirements.get("disabled_reason") and not requirements.get("currently_due"):
        return PayoutAccountStatus.DISABLED
    if requirements.get("currently_due") or requirements.get("past_due"):
        return PayoutAccountStatus.RESTRICTED
    return PayoutAccountStatus.PENDING


class PayoutCoordinator:
    """Earnings and worker transfers"""

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

    async def handle_job_completion(self, job: Job) -> PayoutResult:
        """Create the earning for a completed job (at most once) and try to pay it"""
        if job.worker_id is None:
            raise ValidationError(f"Job {job.id} has no assigned worker", details={"job_id": job.id})

        existing = await self.storage.get_active_earning(job.id, job.worker_id)
        if existing is not None:
            logger.info(f"🔁 EARNING_EXISTS: Job {job.id} worker {job.worker_id} earning {existing.id} ({existing.status})")
            return PayoutResult(earning=existing, status=existing.status, created=False)

        amounts = self.fee_service.calculate_earning_amounts(job.payment_amount, job.service_fee)
        try:
            earning = await self.storage.create_earning(
                job_id=job.id,
                worker_id=job.worker_id,
                amount=amounts["amount"],
                service_fee=amounts["service_fee"],
                net_amount=amounts["net_amount"],
                status=EarningStatus.PENDING.value,
            )
        except DuplicateOperation:
            existing = await self.storage.get_active_earning(job.id, job.worker_id)
            logger.info(f"🔒 EARNING_DUPLICATE_PREVENTED: Job {job.id} worker {job.worker_id}")
            return PayoutResult(earning=existing, status=existing.status if existing else "", created=False)

        logger.info(
            f"💰 EARNING_CREATED: #{earning.id} job {job.id} worker {job.worker_id} "
            f"gross ${earning.amount} fee ${earning.service_fee} net ${earning.net_amount}"
        )
        result = await self._pay_earning(earning, job)
        result.created = True
        return result

    async def _lookup_payout_account(self, worker_id: int) -> Optional[PayoutAccount]:
        # Fail-closed: a slow lookup leaves the earning pending rather than guessing
        return await self.gateway.run_with_timeout(
            lambda: self.storage.get_payout_account(worker_id),
            fail_open=False,
            description=f"payout account lookup for worker {worker_id}",
        )

    async def _pay_earning(self, earning: Earning, job: Job) -> PayoutResult:
        try:
            account = await self._lookup_payout_account(earning.worker_id)
        except Exception as e:
            logger.warning(f"⚠️ PAYOUT_DEFERRED: Earning {earning.id} account lookup failed: {e}")
            return PayoutResult(earning=earning, status=earning.status, reason="payout account lookup failed")

        if account is None or account.status != PayoutAccountStatus.ACTIVE.value:
            logger.info(f"⏸️ PAYOUT_AWAITING_SETUP: Earning {earning.id} worker {earning.worker_id} has no active payout account")
            await self.notifications.payout_setup_required(earning.worker_id, job.id, earning.net_amount)
            return PayoutResult(earning=earning, status=earning.status, reason="no active payout account")

        claimed = await self.storage.claim_earning_for_payout(earning.id)
        if claimed is None:
            current = await self.storage.get_earning(earning.id)
            logger.info(f"🔁 PAYOUT_ALREADY_CLAIMED: Earning {earning.id} status={current.status}")
            return PayoutResult(earning=current, status=current.status, transfer_id=current.transfer_id)

        # One key per earning and attempt; only a refused transfer moves to the next attempt
        attempt = claimed.transfer_attempt or 0
        idempotency_key = f"earning-{earning.id}-transfer-{attempt}"
        try:
            transfer = await self.gateway.call_processor(
                lambda: self.processor.create_transfer(
                    amount=claimed.net_amount,
                    destination_account_ref=account.external_account_id,
                    metadata={"job_id": job.id, "worker_id": earning.worker_id, "earning_id": earning.id},
                    idempotency_key=idempotency_key,
                ),
                description=f"transfer for earning {earning.id}",
            )
        except (ProcessorError, RetryBudgetExhausted) as e:
            cause = e.last_error if isinstance(e, RetryBudgetExhausted) and e.last_error else e
            reason = self.gateway.classifier.describe_processor_failure(cause)
            changes = {"status": EarningStatus.PENDING.value, "failure_reason": reason}
            if isinstance(e, TerminalProcessorError):
                # Processor replays the refusal for a reused key
                changes["transfer_attempt"] = attempt + 1
            reverted = await self.storage.update_earning(earning.id, **changes)
            logger.error(f"❌ PAYOUT_FAILED: Earning {earning.id} job {job.id}: {e}")
            await self.notifications.payout_delayed(earning.worker_id, job.id, reason)
            await self.reconciliation.escalate(
                ReconciliationKind.TRANSFER_FAILED,
                f"Transfer for earning {earning.id} failed",
                job_id=job.id,
                earning_id=earning.id,
                external_reference=account.external_account_id,
                details={"error": str(e), "net_amount": str(claimed.net_amount)},
            )
            await self.events.emit(
                EngineEvent.PAYOUT_FAILED, {"earning_id": earning.id, "job_id": job.id, "reason": reason}
            )
            return PayoutResult(earning=reverted, status=reverted.status, reason=reason)

        transfer_id = transfer.get("id")
        try:
            paid = await self.storage.update_earning(
                earning.id,
                status=EarningStatus.PAID.value,
                transfer_id=transfer_id,
                date_paid=datetime.utcnow(),
                failure_reason=None,
            )
        except Exception as e:
            # Transfer went out; the transfer.paid event or an operator settles the row
            await self.reconciliation.escalate(
                ReconciliationKind.TRANSFER_FAILED,
                f"Transfer {transfer_id} for earning {earning.id} succeeded but was not recorded",
                job_id=job.id,
                earning_id=earning.id,
                external_reference=transfer_id,
                details={"error": str(e)},
            )
            raise

        logger.info(f"✅ PAYOUT_COMPLETED: Earning {earning.id} ${paid.net_amount} -> {account.external_account_id} ({transfer_id})")
        await self.notifications.payment_received(earning.worker_id, job.id, paid.net_amount)
        await self.notifications.notify(
            job.poster_id,
            "Payment Released",
            f"Payment for '{job.title}' has been released to the worker.",
            "payment",
            "job",
            job.id,
        )
        await self.events.emit(
            EngineEvent.PAYOUT_COMPLETED,
            {"earning_id": earning.id, "job_id": job.id, "transfer_id": transfer_id, "amount": str(paid.net_amount)},
        )
        return PayoutResult(earning=paid, status=paid.status, transfer_id=transfer_id)

    async def process_worker_payout(self, earning_id: int) -> PayoutResult:
        """Pay one pending earning (deferred path)"""
        earning = await self.storage.get_earning(earning_id)
        if earning is None:
            raise NotFound(f"Earning {earning_id} not found", details={"earning_id": earning_id})
        if earning.status == EarningStatus.PAID.value:
            raise DuplicateOperation(f"Earning {earning_id} has already been paid", details={"earning_id": earning_id})
        if earning.status == EarningStatus.CANCELLED.value:
            raise ValidationError(f"Earning {earning_id} was cancelled", details={"earning_id": earning_id})
        job = await self.storage.require_job(earning.job_id)
        return await self._pay_earning(earning, job)

    async def _process_batch(self, earnings) -> Dict[str, int]:
        results = {"processed": 0, "paid": 0, "failed": 0, "skipped": 0}
        for earning in earnings:
            results["processed"] += 1
            try:
                job = await self.storage.require_job(earning.job_id)
                outcome = await self._pay_earning(earning, job)
                if outcome.paid:
                    results["paid"] += 1
                elif outcome.reason == "no active payout account":
                    results["skipped"] += 1
                else:
                    results["failed"] += 1
            except Exception as e:
                results["failed"] += 1
                logger.error(f"❌ PAYOUT_BATCH_ERROR: Earning {earning.id}: {e}")
        return results

    async def process_pending_payouts_for_worker(self, worker_id: int) -> Dict[str, int]:
        earnings = await self.storage.list_pending_earnings(worker_id=worker_id)
        results = await self._process_batch(earnings)
        logger.info(f"📦 WORKER_PAYOUT_BATCH: worker {worker_id} {results}")
        return results

    async def process_all_pending_payouts(self) -> Dict[str, int]:
        earnings = await self.storage.list_pending_earnings()
        if not earnings:
            return {"processed": 0, "paid": 0, "failed": 0, "skipped": 0}
        results = await self._process_batch(earnings)
        logger.info(f"📦 PAYOUT_BATCH: {results}")
        return results

    async def sync_payout_account(self, worker_id: int) -> PayoutAccount:
        """Refresh a worker's payout account from the processor; pays pending earnings once active"""
        account = await self.storage.get_payout_account(worker_id)
        if account is None:
            raise NotFound(f"No payout account for worker {worker_id}", details={"worker_id": worker_id})

        info = await self.gateway.call_processor(
            lambda: self.processor.retrieve_account(account.external_account_id),
            description=f"retrieve account {account.external_account_id}",
        )
        return await self.apply_account_update(worker_id, account, info)

    async def apply_account_update(self, worker_id: int, account: PayoutAccount, info: Dict[str, Any]) -> PayoutAccount:
        new_status = derive_account_status(info)
        was_active = account.status == PayoutAccountStatus.ACTIVE.value
        updated = await self.storage.upsert_payout_account(
            worker_id,
            account.external_account_id,
            status=new_status.value,
            charges_enabled=bool(info.get("charges_enabled")),
            payouts_enabled=bool(info.get("payouts_enabled")),
            requirements=info.get("requirements"),
        )
        logger.info(f"🏦 PAYOUT_ACCOUNT_SYNCED: worker {worker_id} {account.status} -> {new_status.value}")
        await self._notify_account_change(worker_id, account, updated, info)

        if new_status == PayoutAccountStatus.ACTIVE and not was_active:
            await self.process_pending_payouts_for_worker(worker_id)
        return updated

    async def _notify_account_change(self, worker_id: int, previous: PayoutAccount,
                                     updated: PayoutAccount, info: Dict[str, Any]):
        requirements = info.get("requirements") or {}
        currently_due = list(requirements.get("currently_due") or [])
        previously_due = set((previous.requirements or {}).get("currently_due") or [])
        newly_due = [r for r in currently_due if r not in previously_due]
        was_active = previous.status == PayoutAccountStatus.ACTIVE.value

        if updated.status == PayoutAccountStatus.DISABLED.value and previous.status != PayoutAccountStatus.DISABLED.value:
            reason = requirements.get("disabled_reason")
            logger.warning(f"🚫 PAYOUT_ACCOUNT_DISABLED: worker {worker_id} account {updated.external_account_id} ({reason})")
            await self.notifications.payout_account_disabled(worker_id, updated.id, reason)
        elif updated.status == PayoutAccountStatus.RESTRICTED.value and was_active:
            logger.warning(f"⚠️ PAYOUT_ACCOUNT_RESTRICTED: worker {worker_id} due {currently_due}")
            await self.notifications.payout_account_attention(worker_id, updated.id, currently_due)
        else:
            if newly_due:
                logger.warning(f"⚠️ PAYOUT_ACCOUNT_ATTENTION: worker {worker_id} newly due {newly_due}")
                await self.notifications.payout_account_attention(worker_id, updated.id, newly_due)
            return

        await self.events.emit(
            EngineEvent.PAYOUT_ACCOUNT_DEACTIVATED,
            {"worker_id": worker_id, "account_id": updated.external_account_id,
             "from_status": previous.status, "to_status": updated.status},
        )

    async def sync_all_payout_accounts(self) -> Dict[str, int]:
        """Refresh every stored payout account; one account failing does not stop the rest"""
        results = {"checked": 0, "synced": 0, "failed": 0}
        for account in await self.storage.list_payout_accounts():
            results["checked"] += 1
            try:
                await self.sync_payout_account(account.worker_id)
                results["synced"] += 1
            except Exception as e:
                results["failed"] += 1
                logger.error(f"❌ PAYOUT_ACCOUNT_SYNC_FAILED: worker {account.worker_id}: {e}")
        logger.info(f"🏦 PAYOUT_ACCOUNT_SYNC: {results}")
        return results
