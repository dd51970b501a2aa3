"""
Job State Transition Validator
=============================

Prevents invalid job and dispute state transitions.
Every status change goes through here before anything is persisted, so a
rejected transition never leaves a side effect behind.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import JobStatus, DisputeStatus
from utils.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class JobStateValidator:
    """
    Validates job state transitions.

    Blocks transitions like:
    - COMPLETED -> OPEN (backwards transition)
    - OPEN -> COMPLETED (skipping assignment and work)
    - CANCELED -> OPEN (resurrection)
    """

    VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
        # PENDING: created, payment not yet captured
        JobStatus.PENDING: {JobStatus.OPEN, JobStatus.CANCELED},

        # OPEN: funded and visible to workers
        JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.CANCELED},

        # ASSIGNED: worker hired, not started
        JobStatus.ASSIGNED: {JobStatus.IN_PROGRESS, JobStatus.CANCELED},

        JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.CANCELED},

        # COMPLETED: payout triggered, disputes possible
        JobStatus.COMPLETED: {JobStatus.CLOSED},

        JobStatus.CANCELED: set(),
        JobStatus.CLOSED: set(),
    }

    TERMINAL_STATES: Set[JobStatus] = {JobStatus.CANCELED, JobStatus.CLOSED}

    # States in which the job has a bound worker
    WORKER_BOUND_STATES: Set[JobStatus] = {
        JobStatus.ASSIGNED,
        JobStatus.IN_PROGRESS,
        JobStatus.COMPLETED,
        JobStatus.CLOSED,
    }

    # Jobs whose details may still be edited by the poster
    EDITABLE_STATES: Set[JobStatus] = {
        JobStatus.PENDING,
        JobStatus.OPEN,
        JobStatus.ASSIGNED,
        JobStatus.IN_PROGRESS,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: JobStatus,
        to_status: JobStatus,
        job_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Check whether a transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        job_ref = f"Job {job_id}" if job_id else "Job"
        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())

        if to_status in valid_next_states:
            logger.info(f"✅ VALID_TRANSITION: {job_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(
            f"❌ INVALID_TRANSITION: {job_ref} {from_status.value} -> {to_status.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        return False, error_msg

    @classmethod
    def ensure_transition(cls, job, to_status: JobStatus) -> JobStatus:
        """Raise InvalidTransition unless job may move to to_status; returns the current status"""
        current = JobStatus(job.status)
        is_valid, reason = cls.validate_transition(current, to_status, job.id)
        if not is_valid:
            raise InvalidTransition(
                reason,
                from_status=current.value,
                to_status=to_status.value,
                details={"job_id": job.id},
            )
        return current

    @classmethod
    def validate_and_transition(cls, job, new_status: JobStatus) -> None:
        """Validate and apply a state transition to a Job row (not flushed)"""
        current = cls.ensure_transition(job, new_status)
        job.status = new_status.value
        logger.info(f"🔄 STATUS_UPDATED: Job {job.id} {current.value} -> {new_status.value}")

    @classmethod
    def get_valid_next_states(cls, current_status: JobStatus) -> Set[JobStatus]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: JobStatus) -> bool:
        return status in cls.TERMINAL_STATES


class DisputeStateValidator:
    """Dispute lifecycle: open -> investigating -> resolved | closed"""

    VALID_TRANSITIONS: Dict[DisputeStatus, Set[DisputeStatus]] = {
        DisputeStatus.OPEN: {DisputeStatus.INVESTIGATING, DisputeStatus.RESOLVED, DisputeStatus.CLOSED},
        DisputeStatus.INVESTIGATING: {DisputeStatus.RESOLVED, DisputeStatus.CLOSED},
        DisputeStatus.RESOLVED: set(),
        DisputeStatus.CLOSED: set(),
    }

    ACTIVE_STATES: Set[DisputeStatus] = {DisputeStatus.OPEN, DisputeStatus.INVESTIGATING}

    @classmethod
    def ensure_transition(cls, dispute, new_status: DisputeStatus) -> DisputeStatus:
        """Raise InvalidTransition unless the dispute may move to new_status"""
        current = DisputeStatus(dispute.status)
        if new_status not in cls.VALID_TRANSITIONS.get(current, set()):
            logger.error(
                f"❌ INVALID_DISPUTE_TRANSITION: Dispute {dispute.id} {current.value} -> {new_status.value}"
            )
            raise InvalidTransition(
                f"Invalid dispute transition: {current.value} -> {new_status.value}",
                from_status=current.value,
                to_status=new_status.value,
                details={"dispute_id": dispute.id},
            )
        return current

    @classmethod
    def validate_and_transition(cls, dispute, new_status: DisputeStatus) -> None:
        current = cls.ensure_transition(dispute, new_status)
        dispute.status = new_status.value
        logger.info(f"🔄 DISPUTE_STATUS_UPDATED: Dispute {dispute.id} {current.value} -> {new_status.value}")
