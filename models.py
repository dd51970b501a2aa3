"""
GigEscrow Marketplace - Payment Engine Database Schema
=====================================================

Schema for the job transaction and escrow payment engine:
- Jobs posted with payment captured up front (payment-first)
- Payment records for captures, refunds and worker transfers
- Worker earnings created exactly once per completed job
- Disputes and refunds on completed jobs
- Worker payout accounts and operational reconciliation items

Money columns are Numeric(12, 2) and always handled as Decimal.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class JobStatus(Enum):
    """Job lifecycle states"""
    PENDING = "pending"
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELED = "canceled"


class PaymentStatus(Enum):
    """Payment record status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(Enum):
    """What a payment record represents"""
    JOB_PAYMENT = "job_payment"
    WORKER_PAYMENT = "worker_payment"
    REFUND = "refund"
    PAYOUT = "payout"


class EarningStatus(Enum):
    """Worker earning status"""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    CANCELLED = "cancelled"


class DisputeStatus(Enum):
    """Dispute status"""
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeType(Enum):
    """Dispute categories"""
    PAYMENT_NOT_RECEIVED = "payment_not_received"
    PAYMENT_INCORRECT = "payment_incorrect"
    WORK_NOT_COMPLETED = "work_not_completed"
    WORK_QUALITY = "work_quality"
    OTHER = "other"


class RefundStatus(Enum):
    """Refund processing status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutAccountStatus(Enum):
    """Worker payout account status at the processor"""
    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"
    DISABLED = "disabled"


class ReconciliationKind(Enum):
    """Operational follow-up categories"""
    REFUND_FAILED_ON_CANCEL = "refund_failed_on_cancel"
    PAYMENT_MONITOR_ESCALATION = "payment_monitor_escalation"
    TRANSFER_FAILED = "transfer_failed"
    TRANSFER_REVERSED = "transfer_reversed"
    ORPHAN_PROCESSOR_EVENT = "orphan_processor_event"
    COMPENSATION_FAILED = "compensation_failed"
    CAPTURE_RETRY_EXHAUSTED = "capture_retry_exhausted"
    REFUND_FINALIZE_FAILED = "refund_finalize_failed"
    PAID_EARNING_CANCELLED = "paid_earning_cancelled"
    REFUND_OUTCOME_UNKNOWN = "refund_outcome_unknown"
    PROCESSOR_MISSING_LOCAL = "processor_missing_local"
    PROCESSOR_AMOUNT_MISMATCH = "processor_amount_mismatch"
    PROCESSOR_STATUS_MISMATCH = "processor_status_mismatch"


# ============================================================================
# CORE MODELS
# ============================================================================

class Job(Base):
    """Job posted by a poster and fulfilled by a worker"""
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True)
    poster_id = Column(BigInteger, nullable=False, index=True)
    worker_id = Column(BigInteger, nullable=True, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Money: total_amount = payment_amount + service_fee
    payment_amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default=JobStatus.PENDING.value, nullable=False, index=True)
    cancel_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=True)
    completion_time = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    payments = relationship("PaymentRecord", back_populates="job")

    __table_args__ = (
        # Exact Numeric equality only holds where Numeric is not stored as float
        CheckConstraint("total_amount = payment_amount + service_fee", name="ck_job_total_amount").ddl_if(dialect="postgresql"),
        CheckConstraint("payment_amount > 0", name="ck_job_payment_positive"),
        Index("idx_job_poster_status", "poster_id", "status"),
    )

    def __repr__(self):
        return f"<Job(id={self.id}, status='{self.status}', total={self.total_amount})>"


class PaymentRecord(Base):
    """One captured (or attempted) processor transaction"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False, default=0)

    external_transaction_id = Column(String(100), unique=True, nullable=True, index=True)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    type = Column(String(20), default=PaymentType.JOB_PAYMENT.value, nullable=False)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    job = relationship("Job", back_populates="payments")

    __table_args__ = (
        Index("idx_payment_status_created", "status", "created_at"),
        Index("idx_payment_job_type", "job_id", "type"),
    )

    def __repr__(self):
        return f"<PaymentRecord(id={self.id}, job_id={self.job_id}, status='{self.status}')>"


class Earning(Base):
    """Worker earning for a completed job"""
    __tablename__ = "earnings"

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    worker_id = Column(BigInteger, nullable=False, index=True)

    # net_amount = amount - service_fee
    amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default=EarningStatus.PENDING.value, nullable=False, index=True)
    transfer_id = Column(String(100), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    # Part of the transfer idempotency key; bumped only after the processor refuses a transfer
    transfer_attempt = Column(Integer, default=0, nullable=False)

    date_earned = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    date_paid = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("net_amount = amount - service_fee", name="ck_earning_net_amount").ddl_if(dialect="postgresql"),
        # At most one live earning per (job, worker); concurrent inserts collide here
        Index(
            "uq_earning_job_worker_active",
            "job_id", "worker_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
    )

    def __repr__(self):
        return f"<Earning(id={self.id}, job_id={self.job_id}, worker_id={self.worker_id}, status='{self.status}')>"


class RefundRecord(Base):
    """Refund issued against a captured payment"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), default=RefundStatus.PENDING.value, nullable=False, index=True)
    external_refund_id = Column(String(100), nullable=True, index=True)
    processed_by = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_amount_positive"),
        Index("idx_refund_payment_status", "payment_id", "status"),
    )


class Dispute(Base):
    """Dispute raised on a completed job"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    reported_by = Column(BigInteger, nullable=False)
    type = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False, index=True)

    resolution = Column(Text, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    resolved_by = Column(BigInteger, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        # One unresolved dispute per job
        Index(
            "uq_dispute_job_active",
            "job_id",
            unique=True,
            postgresql_where=text("status IN ('open', 'investigating')"),
            sqlite_where=text("status IN ('open', 'investigating')"),
        ),
    )


class PayoutAccount(Base):
    """Worker payout destination at the processor"""
    __tablename__ = "payout_accounts"

    id = Column(Integer, primary_key=True)
    worker_id = Column(BigInteger, unique=True, nullable=False, index=True)
    external_account_id = Column(String(100), unique=True, nullable=False)
    status = Column(String(20), default=PayoutAccountStatus.PENDING.value, nullable=False)
    charges_enabled = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    requirements = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Notification(Base):
    """In-app notification written fire-and-forget"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(30), nullable=False, default="info")
    source_type = Column(String(30), nullable=True)
    source_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ReconciliationItem(Base):
    """Escalated money-state inconsistency awaiting operator follow-up"""
    __tablename__ = "reconciliation_items"

    id = Column(Integer, primary_key=True)
    kind = Column(String(40), nullable=False, index=True)
    job_id = Column(Integer, nullable=True)
    payment_id = Column(Integer, nullable=True)
    earning_id = Column(Integer, nullable=True)
    external_reference = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
