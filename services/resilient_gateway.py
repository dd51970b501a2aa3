"""
Resilient Gateway
Wraps backing-store and payment-processor calls with bounded retry and
store connection-health tracking.

- execute_with_retry: re-runs a store operation on serialization failures,
  deadlocks and dropped connections, waiting for reconnection when needed
- call_processor: bounded retry for retryable processor errors
- handle_connection_error / health_check: fixed-delay reconnect loop with
  reconnected / reconnection_failed signals
- run_with_timeout: explicit timeout on store queries with a fail-open or
  fail-closed policy chosen by the caller
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from sqlalchemy import text
from config import Config
from services.error_classifier import ErrorClassificationService
from services.event_channel import EngineEvent, EventChannel
from utils.exceptions import ProcessorError, RetryBudgetExhausted

logger = logging.getLogger(__name__)


def _attempts(name: str, value: Optional[int], default: int) -> int:
    """Explicit attempt count or the configured default; 0 is rejected, not replaced"""
    attempts = default if value is None else value
    if attempts < 1:
        raise ValueError(f"{name} must be at least 1, got {attempts}")
    return attempts


def _timeout(name: str, value: Optional[float], default: float) -> float:
    limit = default if value is None else value
    if limit < 0:
        raise ValueError(f"{name} must not be negative, got {limit}")
    return limit


class ResilientGateway:
    """Bounded retry and reconnection around store and processor calls"""

    def __init__(
        self,
        session_factory=None,
        events: EventChannel = None,
        classifier: ErrorClassificationService = None,
        ping: Optional[Callable[[], Awaitable[Any]]] = None,
        max_reconnect_attempts: int = None,
        reconnect_delay: float = None,
        operation_retries: int = None,
        retry_delay: float = None,
        processor_retries: int = None,
        processor_retry_delay: float = None,
        processor_backoff_base: float = 1.0,
        query_timeout: float = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.events = events or EventChannel()
        self.classifier = classifier or ErrorClassificationService()
        self._ping = ping or self._ping_store
        self._sleep = sleep

        self.max_reconnect_attempts = _attempts(
            "max_reconnect_attempts", max_reconnect_attempts, Config.DB_RECONNECT_MAX_ATTEMPTS
        )
        self.reconnect_delay = Config.DB_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.operation_retries = _attempts("operation_retries", operation_retries, Config.DB_OPERATION_RETRIES)
        self.retry_delay = Config.DB_RETRY_DELAY if retry_delay is None else retry_delay
        self.processor_retries = _attempts("processor_retries", processor_retries, Config.PROCESSOR_MAX_RETRIES)
        self.processor_retry_delay = (
            Config.PROCESSOR_RETRY_DELAY if processor_retry_delay is None else processor_retry_delay
        )
        self.processor_backoff_base = processor_backoff_base
        self.query_timeout = _timeout("query_timeout", query_timeout, Config.STORE_QUERY_TIMEOUT)

        # Connection state
        self.is_reconnecting = False
        self.connection_attempts = 0
        self.last_error: Optional[str] = None
        self._reconnect_done = asyncio.Event()
        self._reconnect_done.set()
        self._reconnect_task: Optional[asyncio.Task] = None

        self.metrics = {
            "store_retries": 0,
            "processor_retries": 0,
            "reconnections": 0,
            "reconnection_failures": 0,
            "timeouts": 0,
            "last_health_check": None,
        }

    # ------------------------------------------------------------------
    # Store connection health
    # ------------------------------------------------------------------

    async def _ping_store(self) -> bool:
        """SELECT 1 against the store; raises on failure"""
        if self.session_factory is None:
            raise RuntimeError("No session factory configured for store ping")
        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            if result.scalar() != 1:
                raise RuntimeError("Store ping returned unexpected result")
        return True

    async def validate_connection(self) -> bool:
        """Ping the store once, fail-closed on timeout"""
        try:
            await asyncio.wait_for(self._ping(), self.query_timeout)
            return True
        except asyncio.TimeoutError:
            self.metrics["timeouts"] += 1
            self.last_error = f"Store ping timed out after {self.query_timeout}s"
            logger.warning(f"⏰ STORE_PING_TIMEOUT: {self.last_error}")
            return False
        except Exception as e:
            self.last_error = str(e)
            logger.warning(f"⚠️ STORE_PING_FAILED: {e}")
            return False

    async def handle_connection_error(self, error: BaseException) -> Optional[bool]:
        """
        Reconnect loop: ping, wait reconnect_delay between failed attempts,
        give up after max_reconnect_attempts.

        Returns None if a reconnection is already running, else whether it succeeded.
        """
        self.last_error = str(error)
        if self.is_reconnecting:
            logger.debug("🔄 STORE_RECONNECT: Reconnection already in progress")
            return None

        self.is_reconnecting = True
        self.connection_attempts = 0
        self._reconnect_done.clear()
        logger.warning(f"🔌 STORE_CONNECTION_LOST: {error}")

        try:
            while self.connection_attempts < self.max_reconnect_attempts:
                logger.info(
                    f"🔄 STORE_RECONNECT: Attempt {self.connection_attempts + 1}/{self.max_reconnect_attempts}"
                )
                if await self.validate_connection():
                    attempts = self.connection_attempts + 1
                    self.connection_attempts = 0
                    self.last_error = None
                    self.metrics["reconnections"] += 1
                    logger.info(f"✅ STORE_RECONNECTED: after {attempts} attempt(s)")
                    self.is_reconnecting = False
                    await self.events.emit(EngineEvent.STORE_RECONNECTED, {"attempts": attempts})
                    return True

                self.connection_attempts += 1
                if self.connection_attempts < self.max_reconnect_attempts:
                    await self._sleep(self.reconnect_delay)

            self.metrics["reconnection_failures"] += 1
            logger.critical(
                f"🚨 STORE_RECONNECTION_FAILED: gave up after {self.connection_attempts} attempts, "
                f"last error: {self.last_error}"
            )
            self.is_reconnecting = False
            await self.events.emit(
                EngineEvent.STORE_RECONNECTION_FAILED,
                {"attempts": self.connection_attempts, "last_error": self.last_error},
            )
            return False
        finally:
            self.is_reconnecting = False
            self._reconnect_done.set()

    async def health_check(self) -> Dict[str, Any]:
        """Periodic store ping; starts reconnection in the background on failure"""
        self.metrics["last_health_check"] = datetime.utcnow().isoformat()
        if self.is_reconnecting:
            return {"status": "reconnecting", "healthy": False}

        if await self.validate_connection():
            return {"status": "healthy", "healthy": True}

        error_message = self.last_error or "store ping failed"
        self._reconnect_task = asyncio.create_task(
            self.handle_connection_error(ConnectionError(error_message))
        )
        return {"status": "unhealthy", "healthy": False, "error": error_message}

    async def wait_for_reconnection(self, timeout: float = None) -> bool:
        """Wait until no reconnection is running"""
        try:
            await asyncio.wait_for(self._reconnect_done.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "is_reconnecting": self.is_reconnecting,
            "connection_attempts": self.connection_attempts,
            "last_error": self.last_error,
            "max_retries": self.max_reconnect_attempts,
            "metrics": self.metrics.copy(),
        }

    # ------------------------------------------------------------------
    # Retry wrappers
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        retries: int = None,
        description: str = "store operation",
    ) -> Any:
        """
        Run operation, re-invoking it on retryable store errors up to `retries`
        attempts in total. The last error is re-raised unchanged.
        """
        max_attempts = _attempts("retries", retries, self.operation_retries)
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not self.classifier.is_retryable_store_error(e):
                    raise

                self.classifier.record_error("store", e)
                if attempt >= max_attempts:
                    logger.error(
                        f"❌ STORE_RETRY_EXHAUSTED: {description} failed after {attempt} attempts: {e}"
                    )
                    raise

                self.metrics["store_retries"] += 1
                logger.warning(
                    f"⚠️ STORE_RETRY: {description} attempt {attempt}/{max_attempts} failed: {e}. "
                    f"Retrying in {self.retry_delay}s"
                )

                if self.classifier.is_connection_error(e):
                    if self.is_reconnecting:
                        await self._reconnect_done.wait()
                    else:
                        await self.handle_connection_error(e)

                await self._sleep(self.retry_delay)

    async def call_processor(
        self,
        operation: Callable[[], Awaitable[Any]],
        description: str = "processor call",
        retries: int = None,
    ) -> Any:
        """
        Call the payment processor with bounded retry.

        Terminal processor errors surface immediately; retryable ones are
        retried and end in RetryBudgetExhausted chained to the last error.
        """
        max_attempts = _attempts("retries", retries, self.processor_retries)
        delay = self.processor_retry_delay
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not self.classifier.is_retryable_processor_error(e):
                    if isinstance(e, ProcessorError):
                        logger.error(f"❌ PROCESSOR_TERMINAL: {description} failed: {e}")
                    raise

                last_error = e
                self.classifier.record_error("processor", e)
                if attempt < max_attempts:
                    self.metrics["processor_retries"] += 1
                    logger.warning(
                        f"⚠️ PROCESSOR_RETRY: {description} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    delay = delay * self.processor_backoff_base

        logger.error(f"❌ PROCESSOR_RETRY_EXHAUSTED: {description} failed after {max_attempts} attempts")
        raise RetryBudgetExhausted(
            f"{description} failed after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
            last_error=last_error,
        ) from last_error

    async def run_with_timeout(
        self,
        operation: Callable[[], Awaitable[Any]],
        timeout: float = None,
        fail_open: bool = False,
        fallback: Any = None,
        description: str = "store query",
    ) -> Any:
        """
        Race a store query against a timeout.

        fail_open=True returns `fallback` on timeout; otherwise the timeout is
        raised to the caller.
        """
        limit = _timeout("timeout", timeout, self.query_timeout)
        try:
            return await asyncio.wait_for(operation(), limit)
        except asyncio.TimeoutError:
            self.metrics["timeouts"] += 1
            if fail_open:
                logger.warning(f"⏰ STORE_TIMEOUT_FAIL_OPEN: {description} exceeded {limit}s, using fallback")
                return fallback
            logger.error(f"⏰ STORE_TIMEOUT_FAIL_CLOSED: {description} exceeded {limit}s")
            raise
