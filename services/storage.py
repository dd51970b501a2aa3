"""
Engine Storage
SQLAlchemy-backed persistence for jobs, payments, earnings, refunds, disputes,
payout accounts, notifications and reconciliation items.

Every public method is one transaction, run through the resilient gateway so
serialization failures, deadlocks and dropped connections are retried.
Multi-row units of work use run_in_transaction.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from database import async_managed_session
from models import (
    Job, JobStatus, PaymentRecord, PaymentStatus, PaymentType, Earning, EarningStatus,
    RefundRecord, RefundStatus, Dispute, DisputeStatus, PayoutAccount, Notification,
    ReconciliationItem,
)
from services.resilient_gateway import ResilientGateway
from utils.exceptions import DuplicateOperation, NotFound
from utils.job_state_validator import DisputeStateValidator, JobStateValidator

logger = logging.getLogger(__name__)


def _is_unique_violation(error: IntegrityError) -> bool:
    sqlstate = getattr(getattr(error, "orig", None), "sqlstate", None) or getattr(
        getattr(error, "orig", None), "pgcode", None
    )
    if sqlstate == "23505":
        return True
    message = str(error).lower()
    return "unique" in message or "duplicate key" in message


def _apply(row, changes: Dict[str, Any]):
    for key, value in changes.items():
        if not hasattr(row, key):
            raise AttributeError(f"{type(row).__name__} has no attribute '{key}'")
        setattr(row, key, value)
    return row


class EngineStorage:
    """Storage collaborator for the payment engine"""

    def __init__(self, session_factory, gateway: ResilientGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    async def run_in_transaction(
        self,
        work: Callable[[AsyncSession], Awaitable[Any]],
        description: str = "store transaction",
    ) -> Any:
        """Run work(session) in one committed transaction, retried as a unit"""
        async def attempt():
            async with async_managed_session(self.session_factory) as session:
                return await work(session)

        return await self.gateway.execute_with_retry(attempt, description=description)

    async def _insert(self, row, description: str):
        async def work(session: AsyncSession):
            session.add(row)
            await session.flush()
            return row

        return await self.run_in_transaction(work, description)

    async def _update(self, model, row_id: int, changes: Dict[str, Any], description: str):
        async def work(session: AsyncSession):
            row = await session.get(model, row_id)
            if row is None:
                raise NotFound(f"{model.__name__} {row_id} not found")
            _apply(row, changes)
            await session.flush()
            return row

        return await self.run_in_transaction(work, description)

    async def _get(self, model, row_id: int):
        async def work(session: AsyncSession):
            return await session.get(model, row_id)

        return await self.run_in_transaction(work, f"get {model.__name__}")

    async def _first(self, stmt, description: str):
        async def work(session: AsyncSession):
            result = await session.execute(stmt)
            return result.scalars().first()

        return await self.run_in_transaction(work, description)

    async def _all(self, stmt, description: str) -> List[Any]:
        async def work(session: AsyncSession):
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self.run_in_transaction(work, description)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, **fields) -> Job:
        return await self._insert(Job(**fields), "create job")

    async def get_job(self, job_id: int) -> Optional[Job]:
        return await self._get(Job, job_id)

    async def require_job(self, job_id: int) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    async def update_job(self, job_id: int, **changes) -> Job:
        return await self._update(Job, job_id, changes, "update job")

    async def transition_job(self, job_id: int, to_status: JobStatus, **changes) -> Job:
        """Re-read the job under lock, validate the transition, apply status and changes"""
        async def work(session: AsyncSession):
            result = await session.execute(select(Job).where(Job.id == job_id).with_for_update())
            job = result.scalar_one_or_none()
            if job is None:
                raise NotFound(f"Job {job_id} not found", details={"job_id": job_id})
            JobStateValidator.validate_and_transition(job, to_status)
            _apply(job, changes)
            await session.flush()
            return job

        return await self.run_in_transaction(work, f"transition job to {to_status.value}")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment(self, **fields) -> PaymentRecord:
        try:
            return await self._insert(PaymentRecord(**fields), "create payment")
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateOperation(
                    f"Payment with external id {fields.get('external_transaction_id')} already recorded",
                    details={"external_transaction_id": fields.get("external_transaction_id")},
                ) from e
            raise

    async def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        return await self._get(PaymentRecord, payment_id)

    async def get_payment_by_external_id(self, external_id: str) -> Optional[PaymentRecord]:
        stmt = select(PaymentRecord).where(PaymentRecord.external_transaction_id == external_id)
        return await self._first(stmt, "get payment by external id")

    async def get_payments_by_external_ids(self, external_ids: Iterable[str]) -> Dict[str, PaymentRecord]:
        ids = [i for i in external_ids if i]
        if not ids:
            return {}
        stmt = select(PaymentRecord).where(PaymentRecord.external_transaction_id.in_(ids))
        return {p.external_transaction_id: p for p in await self._all(stmt, "payments by external id")}

    async def update_payment(self, payment_id: int, **changes) -> PaymentRecord:
        return await self._update(PaymentRecord, payment_id, changes, "update payment")

    async def get_job_payment(self, job_id: int) -> Optional[PaymentRecord]:
        """The job's capture record, preferring a completed or refunded one"""
        stmt = (
            select(PaymentRecord)
            .where(
                and_(
                    PaymentRecord.job_id == job_id,
                    PaymentRecord.type == PaymentType.JOB_PAYMENT.value,
                )
            )
            .order_by(PaymentRecord.id.desc())
        )
        payments = await self._all(stmt, "get job payment")
        for payment in payments:
            if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                return payment
        return payments[0] if payments else None

    async def list_payments_by_status(self, statuses: Iterable[PaymentStatus]) -> List[PaymentRecord]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.status.in_([s.value for s in statuses]))
            .order_by(PaymentRecord.id)
        )
        return await self._all(stmt, "list payments by status")

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    @staticmethod
    async def refunded_total(session: AsyncSession, payment_id: int, include_pending: bool = True) -> Decimal:
        """Sum of refunds counted against a payment's captured amount"""
        statuses = [RefundStatus.COMPLETED.value]
        if include_pending:
            statuses.append(RefundStatus.PENDING.value)
        result = await session.execute(
            select(RefundRecord.amount).where(
                and_(RefundRecord.payment_id == payment_id, RefundRecord.status.in_(statuses))
            )
        )
        return sum((Decimal(str(amount)) for amount in result.scalars().all()), Decimal("0.00"))

    async def get_refunded_total(self, payment_id: int, include_pending: bool = True) -> Decimal:
        async def work(session: AsyncSession):
            return await self.refunded_total(session, payment_id, include_pending)

        return await self.run_in_transaction(work, "sum refunds")

    async def update_refund(self, refund_id: int, **changes) -> RefundRecord:
        return await self._update(RefundRecord, refund_id, changes, "update refund")

    async def list_refunds(self, payment_id: int) -> List[RefundRecord]:
        stmt = select(RefundRecord).where(RefundRecord.payment_id == payment_id).order_by(RefundRecord.id)
        return await self._all(stmt, "list refunds")

    async def list_refunds_by_status(self, status: RefundStatus) -> List[RefundRecord]:
        stmt = select(RefundRecord).where(RefundRecord.status == status.value).order_by(RefundRecord.id)
        return await self._all(stmt, "list refunds by status")

    # ------------------------------------------------------------------
    # Earnings
    # ------------------------------------------------------------------

    async def get_active_earning(self, job_id: int, worker_id: int) -> Optional[Earning]:
        stmt = select(Earning).where(
            and_(
                Earning.job_id == job_id,
                Earning.worker_id == worker_id,
                Earning.status != EarningStatus.CANCELLED.value,
            )
        )
        return await self._first(stmt, "get active earning")

    async def get_active_earnings_for_job(self, job_id: int) -> List[Earning]:
        stmt = select(Earning).where(
            and_(Earning.job_id == job_id, Earning.status != EarningStatus.CANCELLED.value)
        )
        return await self._all(stmt, "get earnings for job")

    async def create_earning(self, **fields) -> Earning:
        """Insert an earning; a live duplicate for (job, worker) raises DuplicateOperation"""
        try:
            return await self._insert(Earning(**fields), "create earning")
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateOperation(
                    f"Earning already exists for job {fields.get('job_id')} worker {fields.get('worker_id')}",
                    details={"job_id": fields.get("job_id"), "worker_id": fields.get("worker_id")},
                ) from e
            raise

    async def get_earning(self, earning_id: int) -> Optional[Earning]:
        return await self._get(Earning, earning_id)

    async def get_earning_by_transfer_id(self, transfer_id: str) -> Optional[Earning]:
        stmt = select(Earning).where(Earning.transfer_id == transfer_id)
        return await self._first(stmt, "get earning by transfer id")

    async def update_earning(self, earning_id: int, **changes) -> Earning:
        return await self._update(Earning, earning_id, changes, "update earning")

    async def claim_earning_for_payout(self, earning_id: int) -> Optional[Earning]:
        """Move a pending earning to processing; None if another payout already claimed it"""
        async def work(session: AsyncSession):
            result = await session.execute(
                select(Earning).where(Earning.id == earning_id).with_for_update()
            )
            earning = result.scalar_one_or_none()
            if earning is None:
                raise NotFound(f"Earning {earning_id} not found", details={"earning_id": earning_id})
            if earning.status != EarningStatus.PENDING.value:
                return None
            earning.status = EarningStatus.PROCESSING.value
            await session.flush()
            return earning

        return await self.run_in_transaction(work, "claim earning")

    async def list_pending_earnings(self, worker_id: int = None) -> List[Earning]:
        conditions = [Earning.status == EarningStatus.PENDING.value]
        if worker_id is not None:
            conditions.append(Earning.worker_id == worker_id)
        stmt = select(Earning).where(and_(*conditions)).order_by(Earning.id)
        return await self._all(stmt, "list pending earnings")

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def create_dispute(self, **fields) -> Dispute:
        try:
            return await self._insert(Dispute(**fields), "create dispute")
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateOperation(
                    f"An open dispute already exists for job {fields.get('job_id')}",
                    details={"job_id": fields.get("job_id")},
                ) from e
            raise

    async def get_dispute(self, dispute_id: int) -> Optional[Dispute]:
        return await self._get(Dispute, dispute_id)

    async def require_dispute(self, dispute_id: int) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        if dispute is None:
            raise NotFound(f"Dispute {dispute_id} not found", details={"dispute_id": dispute_id})
        return dispute

    async def get_active_dispute_for_job(self, job_id: int) -> Optional[Dispute]:
        stmt = select(Dispute).where(
            and_(
                Dispute.job_id == job_id,
                Dispute.status.in_([DisputeStatus.OPEN.value, DisputeStatus.INVESTIGATING.value]),
            )
        )
        return await self._first(stmt, "get active dispute")

    async def transition_dispute(self, dispute_id: int, to_status: DisputeStatus, **changes) -> Dispute:
        async def work(session: AsyncSession):
            result = await session.execute(select(Dispute).where(Dispute.id == dispute_id).with_for_update())
            dispute = result.scalar_one_or_none()
            if dispute is None:
                raise NotFound(f"Dispute {dispute_id} not found", details={"dispute_id": dispute_id})
            DisputeStateValidator.validate_and_transition(dispute, to_status)
            _apply(dispute, changes)
            await session.flush()
            return dispute

        return await self.run_in_transaction(work, f"transition dispute to {to_status.value}")

    # ------------------------------------------------------------------
    # Payout accounts
    # ------------------------------------------------------------------

    async def get_payout_account(self, worker_id: int) -> Optional[PayoutAccount]:
        stmt = select(PayoutAccount).where(PayoutAccount.worker_id == worker_id)
        return await self._first(stmt, "get payout account")

    async def get_payout_account_by_external_id(self, external_account_id: str) -> Optional[PayoutAccount]:
        stmt = select(PayoutAccount).where(PayoutAccount.external_account_id == external_account_id)
        return await self._first(stmt, "get payout account by external id")

    async def list_payout_accounts(self) -> List[PayoutAccount]:
        return await self._all(select(PayoutAccount).order_by(PayoutAccount.worker_id), "list payout accounts")

    async def upsert_payout_account(self, worker_id: int, external_account_id: str, **fields) -> PayoutAccount:
        async def work(session: AsyncSession):
            result = await session.execute(select(PayoutAccount).where(PayoutAccount.worker_id == worker_id))
            account = result.scalar_one_or_none()
            if account is None:
                account = PayoutAccount(worker_id=worker_id, external_account_id=external_account_id)
                session.add(account)
            account.external_account_id = external_account_id
            _apply(account, fields)
            await session.flush()
            return account

        return await self.run_in_transaction(work, "upsert payout account")

    # ------------------------------------------------------------------
    # Notifications and reconciliation
    # ------------------------------------------------------------------

    async def create_notification(self, **fields) -> Notification:
        return await self._insert(Notification(**fields), "create notification")

    async def list_notifications(self, user_id: int) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
        return await self._all(stmt, "list notifications")

    async def create_reconciliation_item(self, kind, **fields) -> ReconciliationItem:
        kind_value = kind.value if hasattr(kind, "value") else kind
        item = await self._insert(ReconciliationItem(kind=kind_value, **fields), "create reconciliation item")
        logger.critical(
            f"🚨 RECONCILIATION_ITEM: #{item.id} {kind_value} job={fields.get('job_id')} "
            f"payment={fields.get('payment_id')} ref={fields.get('external_reference')}"
        )
        return item

    async def list_reconciliation_items(self, resolved: bool = False, kind=None) -> List[ReconciliationItem]:
        conditions = [ReconciliationItem.resolved == resolved]
        if kind is not None:
            conditions.append(ReconciliationItem.kind == (kind.value if hasattr(kind, "value") else kind))
        stmt = select(ReconciliationItem).where(and_(*conditions)).order_by(ReconciliationItem.id)
        return await self._all(stmt, "list reconciliation items")

    async def resolve_reconciliation_item(self, item_id: int) -> ReconciliationItem:
        return await self._update(
            ReconciliationItem, item_id, {"resolved": True, "resolved_at": datetime.utcnow()},
            "resolve reconciliation item",
        )
