"""
Error Classification Service
Decides whether store and processor failures are retryable, connection-level
or terminal, and tracks error rates per source.

One instance is created per engine and passed to the components that need it.
"""

import logging
import re
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from config import Config
from utils.exceptions import (
    EngineError,
    ProcessorError,
    RetryBudgetExhausted,
)

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """How an error should be handled"""
    STORE_CONNECTION = "store_connection"    # Reconnect, then retry
    STORE_RETRYABLE = "store_retryable"      # Retry after a short delay
    PROCESSOR_RETRYABLE = "processor_retryable"
    PROCESSOR_TERMINAL = "processor_terminal"
    BUSINESS = "business"                    # Engine rule violation, never retried
    UNKNOWN = "unknown"


class ErrorClassificationService:
    """Classifies engine errors and keeps per-source error counts"""

    # PostgreSQL SQLSTATE codes worth retrying
    RETRYABLE_SQLSTATES = {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "XX000",  # internal_error (seen on dropped pooled connections)
        "08006",  # connection_failure
        "08003",  # connection_does_not_exist
        "08001",  # sqlclient_unable_to_establish_sqlconnection
        "57P01",  # admin_shutdown
    }

    CONNECTION_SQLSTATES = {"08006", "08003", "08001", "57P01"}

    STORE_CONNECTION_PATTERNS = [
        r"connection.*terminated",
        r"connection.*refused|econnrefused",
        r"connection.*reset|econnreset",
        r"server closed the connection",
        r"could not connect",
        r"connection.*(is )?closed",
        r"enotfound|epipe|broken pipe",
        r"timeout expired|connection.*timed out",
    ]

    STORE_RETRYABLE_PATTERNS = [
        r"deadlock",
        r"could not serialize|serialization failure",
        r"database is locked",
    ]

    PROCESSOR_TERMINAL_PATTERNS = [
        r"capabilities",
        r"insufficient.*funds|insufficient.*balance",
        r"card.*declined|do_not_honor",
        r"no such (account|payment_intent|destination)",
    ]

    def __init__(
        self,
        window_seconds: int = None,
        threshold: int = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds if window_seconds is not None else Config.ERROR_RATE_WINDOW
        self.threshold = threshold if threshold is not None else Config.ERROR_RATE_THRESHOLD
        self._clock = clock

        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, str] = {}
        self._recent: Dict[str, Deque[float]] = {}
        self._last_logged: Dict[str, float] = {}
        self._threshold_alerted: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def extract_sqlstate(error: BaseException) -> Optional[str]:
        """Find a SQLSTATE code on the error or its wrapped driver error"""
        candidates = [error, getattr(error, "orig", None), getattr(error, "__cause__", None)]
        for candidate in candidates:
            if candidate is None:
                continue
            for attr in ("sqlstate", "pgcode"):
                value = getattr(candidate, attr, None)
                if isinstance(value, str) and value:
                    return value
            code = getattr(candidate, "code", None)
            if isinstance(code, str) and len(code) == 5 and code[:2].isalnum():
                if code.upper() in ErrorClassificationService.RETRYABLE_SQLSTATES:
                    return code.upper()
        return None

    @staticmethod
    def _matches(patterns, message: str) -> bool:
        return any(re.search(pattern, message, re.IGNORECASE) for pattern in patterns)

    def is_connection_error(self, error: BaseException) -> bool:
        """Connection-level failure: the store must be reconnected"""
        if isinstance(error, (DisconnectionError, PoolTimeoutError, ConnectionError)):
            return True
        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return True
        sqlstate = self.extract_sqlstate(error)
        if sqlstate in self.CONNECTION_SQLSTATES:
            return True
        if isinstance(error, (OperationalError, OSError)) or isinstance(getattr(error, "orig", None), OSError):
            return self._matches(self.STORE_CONNECTION_PATTERNS, str(error))
        return self._matches(self.STORE_CONNECTION_PATTERNS, str(error)) and not isinstance(error, EngineError)

    def is_retryable_store_error(self, error: BaseException) -> bool:
        """Serialization failures, deadlocks and connection drops"""
        if isinstance(error, EngineError):
            return False
        if self.is_connection_error(error):
            return True
        sqlstate = self.extract_sqlstate(error)
        if sqlstate in self.RETRYABLE_SQLSTATES:
            return True
        return self._matches(self.STORE_RETRYABLE_PATTERNS, str(error))

    def is_retryable_processor_error(self, error: BaseException) -> bool:
        if isinstance(error, ProcessorError):
            return error.retryable
        return isinstance(error, (ConnectionError, TimeoutError))

    def classify(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, ProcessorError):
            return ErrorCategory.PROCESSOR_RETRYABLE if error.retryable else ErrorCategory.PROCESSOR_TERMINAL
        if isinstance(error, RetryBudgetExhausted):
            return ErrorCategory.BUSINESS
        if isinstance(error, EngineError):
            return ErrorCategory.BUSINESS
        if self.is_connection_error(error):
            return ErrorCategory.STORE_CONNECTION
        if self.is_retryable_store_error(error):
            return ErrorCategory.STORE_RETRYABLE
        return ErrorCategory.UNKNOWN

    def describe_processor_failure(self, error: BaseException) -> str:
        """User-facing reason for a failed payout or capture"""
        message = str(error)
        lowered = message.lower()
        if "capabilities" in lowered:
            return "Payout account setup is incomplete. Please finish account verification."
        if "insufficient" in lowered and ("funds" in lowered or "balance" in lowered):
            return "Platform balance is temporarily insufficient. The payment will be retried."
        if isinstance(error, ProcessorError) and error.retryable:
            return "The payment processor is temporarily unavailable. The payment will be retried."
        return message or "Payment processor error"

    # ------------------------------------------------------------------
    # Error rate tracking
    # ------------------------------------------------------------------

    def record_error(self, source: str, error: BaseException) -> int:
        """Record an error for source; returns the count inside the current window"""
        now = self._clock()
        self.error_counts[source] = self.error_counts.get(source, 0) + 1
        self.last_errors[source] = f"{type(error).__name__}: {error}"

        recent = self._recent.setdefault(source, deque())
        recent.append(now)
        while recent and now - recent[0] > self.window_seconds:
            recent.popleft()

        in_window = len(recent)
        if in_window >= self.threshold:
            last_alert = self._threshold_alerted.get(source)
            if last_alert is None or now - last_alert > self.window_seconds:
                self._threshold_alerted[source] = now
                logger.critical(
                    f"🚨 ERROR_RATE_EXCEEDED: {source} had {in_window} errors in "
                    f"{self.window_seconds}s (threshold {self.threshold})"
                )
        return in_window

    def should_log(self, key: str, interval: float = None) -> bool:
        """Rate-limit repeated log lines for the same key"""
        now = self._clock()
        interval = self.window_seconds if interval is None else interval
        last = self._last_logged.get(key)
        if last is not None and now - last < interval:
            return False
        self._last_logged[key] = now
        return True

    def is_over_threshold(self, source: str) -> bool:
        now = self._clock()
        recent = self._recent.get(source)
        if not recent:
            return False
        return sum(1 for ts in recent if now - ts <= self.window_seconds) >= self.threshold

    def get_error_summary(self) -> Dict[str, Any]:
        """Summary of recorded errors for monitoring"""
        return {
            "error_counts": self.error_counts.copy(),
            "last_errors": self.last_errors.copy(),
            "total_errors": sum(self.error_counts.values()),
            "sources_over_threshold": [s for s in self._recent if self.is_over_threshold(s)],
        }

    def reset(self):
        self.error_counts.clear()
        self.last_errors.clear()
        self._recent.clear()
        self._last_logged.clear()
        self._threshold_alerted.clear()
