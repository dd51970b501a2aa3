"""
Engine Event Channel
Explicit callback registry for payment engine signals (payment outcomes,
escalations, store reconnects). Components receive the channel they emit on;
observers register callbacks with add_callback.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EngineEvent(Enum):
    """Signals emitted by engine components"""
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_ACTION_REQUIRED = "payment.action_required"
    PAYMENT_ESCALATED = "payment.escalated"
    PAYMENT_RETRY_FAILED = "payment.retry_failed"
    PAYMENT_MONITOR_ERROR = "payment.monitor_error"
    STORE_RECONNECTED = "store.reconnected"
    STORE_RECONNECTION_FAILED = "store.reconnection_failed"
    PAYOUT_COMPLETED = "payout.completed"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_ACCOUNT_DEACTIVATED = "payout_account.deactivated"
    REFUND_COMPLETED = "refund.completed"
    ENGINE_ESCALATION = "engine.escalation"


class EventChannel:
    """Callback registry; callback failures are logged and never reach the emitter"""

    def __init__(self, history_size: int = 200):
        self._callbacks: Dict[EngineEvent, List[Callable]] = {}
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.metrics = {"emitted": 0, "callback_errors": 0}

    def add_callback(self, event: EngineEvent, callback: Callable) -> None:
        """Register callback(payload) for an event; coroutine functions are awaited"""
        if not isinstance(event, EngineEvent):
            raise ValueError(f"Unknown event type: {event}")
        self._callbacks.setdefault(event, []).append(callback)

    def remove_callback(self, event: EngineEvent, callback: Callable) -> None:
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def emit(self, event: EngineEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = dict(payload or {})
        self.metrics["emitted"] += 1
        self.history.append({"event": event, "payload": payload, "emitted_at": datetime.utcnow()})
        logger.debug(f"📣 ENGINE_EVENT: {event.value} {payload}")

        for callback in list(self._callbacks.get(event, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(payload)
                else:
                    callback(payload)
            except Exception as e:
                self.metrics["callback_errors"] += 1
                logger.error(f"❌ ENGINE_EVENT: Error in {event.value} callback: {e}")

    def events_of(self, event: EngineEvent) -> List[Dict[str, Any]]:
        """Payloads emitted for an event, oldest first"""
        return [entry["payload"] for entry in self.history if entry["event"] == event]
