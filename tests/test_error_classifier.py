"""Error classification and error-rate tracking"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from services.error_classifier import ErrorCategory, ErrorClassificationService
from utils.exceptions import (
    InvalidTransition, RetryableProcessorError, RetryBudgetExhausted, TerminalProcessorError,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class PgError(Exception):
    """Driver error carrying a SQLSTATE, like asyncpg's"""

    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def classifier(clock):
    return ErrorClassificationService(window_seconds=60, threshold=3, clock=clock)


class TestStoreClassification:

    @pytest.mark.parametrize("error", [
        ConnectionError("anything"),
        OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly")),
        OperationalError("SELECT 1", {}, PgError("terminating connection", "57P01")),
        RuntimeError("Connection terminated unexpectedly"),
    ])
    def test_connection_errors(self, classifier, error):
        assert classifier.is_connection_error(error)
        assert classifier.is_retryable_store_error(error)
        assert classifier.classify(error) == ErrorCategory.STORE_CONNECTION

    @pytest.mark.parametrize("error", [
        OperationalError("UPDATE", {}, PgError("could not serialize access", "40001")),
        OperationalError("UPDATE", {}, PgError("deadlock detected", "40P01")),
        OperationalError("UPDATE", {}, Exception("database is locked")),
    ])
    def test_retryable_store_errors(self, classifier, error):
        assert not classifier.is_connection_error(error)
        assert classifier.is_retryable_store_error(error)
        assert classifier.classify(error) == ErrorCategory.STORE_RETRYABLE

    def test_integrity_error_is_not_retryable(self, classifier):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: earnings.job_id"))
        assert not classifier.is_retryable_store_error(error)
        assert classifier.classify(error) == ErrorCategory.UNKNOWN

    def test_engine_errors_are_business(self, classifier):
        error = InvalidTransition("Connection closed is not a status", from_status="open", to_status="closed")
        assert not classifier.is_retryable_store_error(error)
        assert classifier.classify(error) == ErrorCategory.BUSINESS
        assert classifier.classify(RetryBudgetExhausted("gave up", attempts=3)) == ErrorCategory.BUSINESS


class TestProcessorClassification:

    def test_retryable_and_terminal(self, classifier):
        assert classifier.is_retryable_processor_error(RetryableProcessorError("rate limited"))
        assert classifier.is_retryable_processor_error(TimeoutError())
        assert not classifier.is_retryable_processor_error(TerminalProcessorError("card_declined"))
        assert not classifier.is_retryable_processor_error(ValueError("bad"))
        assert classifier.classify(RetryableProcessorError("x")) == ErrorCategory.PROCESSOR_RETRYABLE
        assert classifier.classify(TerminalProcessorError("x")) == ErrorCategory.PROCESSOR_TERMINAL

    @pytest.mark.parametrize("message,expected", [
        ("Account needs capabilities enabled: transfers", "Payout account setup is incomplete"),
        ("You have insufficient funds in your Stripe account", "Platform balance is temporarily insufficient"),
        ("Your card was declined.", "Your card was declined."),
    ])
    def test_describe_processor_failure(self, classifier, message, expected):
        assert classifier.describe_processor_failure(TerminalProcessorError(message)).startswith(expected)

    def test_describe_retryable_failure(self, classifier):
        reason = classifier.describe_processor_failure(RetryableProcessorError("HTTP 503"))
        assert "temporarily unavailable" in reason


class TestErrorRates:

    def test_threshold_within_window(self, classifier, clock):
        for _ in range(2):
            classifier.record_error("store", ConnectionError("down"))
        assert not classifier.is_over_threshold("store")

        assert classifier.record_error("store", ConnectionError("down")) == 3
        assert classifier.is_over_threshold("store")
        assert classifier.get_error_summary()["sources_over_threshold"] == ["store"]

    def test_old_errors_leave_the_window(self, classifier, clock):
        for _ in range(3):
            classifier.record_error("processor", RetryableProcessorError("503"))
        clock.now += 61

        assert not classifier.is_over_threshold("processor")
        assert classifier.record_error("processor", RetryableProcessorError("503")) == 1
        assert classifier.error_counts["processor"] == 4

    def test_summary_and_reset(self, classifier):
        classifier.record_error("store", ConnectionError("down"))
        summary = classifier.get_error_summary()
        assert summary["total_errors"] == 1
        assert summary["last_errors"]["store"] == "ConnectionError: down"

        classifier.reset()
        assert classifier.get_error_summary()["total_errors"] == 0

    def test_should_log_rate_limits(self, classifier, clock):
        assert classifier.should_log("monitor", interval=10)
        assert not classifier.should_log("monitor", interval=10)
        clock.now += 11
        assert classifier.should_log("monitor", interval=10)

    def test_instances_do_not_share_state(self, clock):
        first = ErrorClassificationService(window_seconds=60, threshold=3, clock=clock)
        second = ErrorClassificationService(window_seconds=60, threshold=3, clock=clock)
        first.record_error("store", ConnectionError("down"))
        assert second.error_counts == {}
