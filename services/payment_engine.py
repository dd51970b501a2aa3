"""
Payment Engine
Builds and wires every engine component for one engine instance. Nothing is
module-global: the error classifier, event channel and gateway are created
here and handed to the components that need them.
"""

import logging
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from database import get_async_session_factory
from services.dispute_resolver import DisputeResolver
from services.error_classifier import ErrorClassificationService
from services.escrow_ledger import EscrowLedger
from services.event_channel import EventChannel
from services.fee_service import FeeService
from services.job_state_machine import JobStateMachine
from services.notification_service import NotificationService
from services.payment_processor import StripePaymentProcessor
from services.payment_status_monitor import PaymentStatusMonitor
from services.payout_coordinator import PayoutCoordinator
from services.processor_event_handler import ProcessorEventHandler
from services.reconciliation_service import ReconciliationService
from services.resilient_gateway import ResilientGateway
from services.storage import EngineStorage

logger = logging.getLogger(__name__)


class PaymentEngine:
    """Job transaction and escrow payment engine"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        processor=None,
        classifier: Optional[ErrorClassificationService] = None,
        events: Optional[EventChannel] = None,
        fee_service: Optional[FeeService] = None,
        gateway_options: Optional[Dict[str, Any]] = None,
        monitor_max_retries: int = None,
        monitor_interval: float = None,
    ):
        self.session_factory = session_factory or get_async_session_factory()
        self.classifier = classifier or ErrorClassificationService()
        self.events = events or EventChannel()
        self.gateway = ResilientGateway(
            session_factory=self.session_factory,
            events=self.events,
            classifier=self.classifier,
            **(gateway_options or {}),
        )
        self.processor = processor or StripePaymentProcessor()
        self.fee_service = fee_service or FeeService()

        self.storage = EngineStorage(self.session_factory, self.gateway)
        self.notifications = NotificationService(self.storage)
        self.reconciliation = ReconciliationService(
            self.storage, self.events, processor=self.processor, gateway=self.gateway,
        )

        self.ledger = EscrowLedger(
            self.storage, self.processor, self.gateway, self.fee_service,
            self.notifications, self.events, self.reconciliation,
        )
        self.payouts = PayoutCoordinator(
            self.storage, self.processor, self.gateway, self.fee_service,
            self.notifications, self.events, self.reconciliation,
        )
        self.jobs = JobStateMachine(
            self.storage, self.ledger, self.payouts, self.fee_service, self.events, self.reconciliation,
        )
        self.monitor = PaymentStatusMonitor(
            self.storage, self.processor, self.gateway, self.ledger, self.events, self.reconciliation,
            max_retries=monitor_max_retries,
            check_interval=monitor_interval,
        )
        self.ledger.attach_monitor(self.monitor)
        self.disputes = DisputeResolver(
            self.storage, self.ledger, self.gateway, self.notifications, self.events,
        )
        self.event_handler = ProcessorEventHandler(
            self.storage, self.ledger, self.payouts, self.reconciliation, monitor=self.monitor,
        )

        self.started = False

    async def start(self, monitor_loop: bool = True):
        """
        Bring the engine up: check the store, rebuild monitor tracking and
        resubmit refunds a previous run left pending.

        With monitor_loop=False the monitor is only rebuilt and its polling
        is left to an external scheduler calling monitor.poll_once().
        """
        if self.started:
            return
        if not await self.gateway.validate_connection():
            logger.warning("⚠️ PAYMENT_ENGINE: Store check failed at startup, starting reconnection")
            await self.gateway.handle_connection_error(RuntimeError("startup ping failed"))

        if monitor_loop:
            await self.monitor.start(rebuild=True)
        else:
            await self.monitor.rebuild_from_storage()
        try:
            await self.ledger.recover_pending_refunds()
        except Exception as e:
            logger.error(f"❌ PAYMENT_ENGINE: Refund recovery failed at startup: {e}")
        self.started = True
        logger.info("🚀 PAYMENT_ENGINE: Started")

    async def stop(self):
        await self.monitor.stop()
        self.started = False
        logger.info("🛑 PAYMENT_ENGINE: Stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "store": self.gateway.get_connection_status(),
            "monitor": self.monitor.get_status(),
            "errors": self.classifier.get_error_summary(),
            "events": dict(self.events.metrics),
        }
