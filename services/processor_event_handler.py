"""
Processor Event Handler
Reconciles inbound processor events (payment intents, transfers, connected
accounts) against engine records by external id. Every handler is
idempotent: replaying an event leaves the records as they are.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from models import Earning, EarningStatus, ReconciliationKind
from services.escrow_ledger import EscrowLedger
from services.payout_coordinator import PayoutCoordinator
from services.reconciliation_service import ReconciliationService
from services.storage import EngineStorage

logger = logging.getLogger(__name__)


class ProcessorEventHandler:
    """Dispatches processor events to reconciliation handlers"""

    def __init__(
        self,
        storage: EngineStorage,
        ledger: EscrowLedger,
        payout_coordinator: PayoutCoordinator,
        reconciliation: ReconciliationService,
        monitor=None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.payout_coordinator = payout_coordinator
        self.reconciliation = reconciliation
        self.monitor = monitor

        self.handlers = {
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "payment_intent.canceled": self._payment_intent_failed,
            "transfer.created": self._transfer_paid,
            "transfer.paid": self._transfer_paid,
            "transfer.failed": self._transfer_failed,
            "transfer.reversed": self._transfer_failed,
            "account.updated": self._account_updated,
        }

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle one Stripe-shaped event: {"id", "type", "data": {"object": {...}}}"""
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        result = {"event_id": event.get("id"), "type": event_type, "handled": False, "action": "ignored"}

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.debug(f"🔕 PROCESSOR_EVENT_IGNORED: {event_type} ({event.get('id')})")
            return result

        logger.info(f"📨 PROCESSOR_EVENT: {event_type} for {obj.get('id')} ({event.get('id')})")
        result["action"] = await handler(event_type, obj)
        result["handled"] = True
        return result

    def _untrack(self, external_id: str):
        if self.monitor is not None:
            self.monitor.untrack(external_id)

    async def _orphan(self, event_type: str, obj: Dict[str, Any]) -> str:
        await self.reconciliation.escalate(
            ReconciliationKind.ORPHAN_PROCESSOR_EVENT,
            f"{event_type} for unknown object {obj.get('id')}",
            external_reference=obj.get("id"),
            details={"event_type": event_type, "metadata": dict(obj.get("metadata") or {})},
        )
        return "orphaned"

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def _payment_intent_succeeded(self, event_type: str, intent: Dict[str, Any]) -> str:
        payment = await self.storage.get_payment_by_external_id(intent.get("id"))
        if payment is None:
            # Money moved for a record we never wrote; never create one blindly
            return await self._orphan(event_type, intent)

        self._untrack(payment.external_transaction_id)
        before = payment.status
        confirmed = await self.ledger.confirm_capture(payment)
        return "confirmed" if confirmed.status != before else "already_settled"

    async def _payment_intent_failed(self, event_type: str, intent: Dict[str, Any]) -> str:
        payment = await self.storage.get_payment_by_external_id(intent.get("id"))
        if payment is None:
            logger.warning(f"⚠️ PROCESSOR_EVENT_UNKNOWN_PAYMENT: {event_type} for {intent.get('id')}")
            return "unknown_payment"

        self._untrack(payment.external_transaction_id)
        last_error = intent.get("last_payment_error") or {}
        reason = last_error.get("message") or (
            "Payment canceled" if event_type == "payment_intent.canceled" else "Payment failed"
        )
        before = payment.status
        updated = await self.ledger.mark_payment_failed(payment, reason)
        return "failed" if updated.status != before else "already_settled"

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _find_earning(self, transfer: Dict[str, Any]) -> Optional[Earning]:
        earning = await self.storage.get_earning_by_transfer_id(transfer.get("id"))
        if earning is not None:
            return earning
        earning_id = (transfer.get("metadata") or {}).get("earning_id")
        if earning_id:
            try:
                return await self.storage.get_earning(int(earning_id))
            except (TypeError, ValueError):
                logger.warning(f"⚠️ TRANSFER_BAD_METADATA: earning_id={earning_id!r} on {transfer.get('id')}")
        return None

    async def _transfer_paid(self, event_type: str, transfer: Dict[str, Any]) -> str:
        earning = await self._find_earning(transfer)
        if earning is None:
            return await self._orphan(event_type, transfer)

        if earning.status == EarningStatus.PAID.value:
            return "already_settled"
        if earning.status == EarningStatus.CANCELLED.value:
            await self.reconciliation.escalate(
                ReconciliationKind.PAID_EARNING_CANCELLED,
                f"Transfer {transfer.get('id')} went out for cancelled earning {earning.id}",
                job_id=earning.job_id,
                earning_id=earning.id,
                external_reference=transfer.get("id"),
            )
            return "escalated"

        await self.storage.update_earning(
            earning.id,
            status=EarningStatus.PAID.value,
            transfer_id=transfer.get("id"),
            date_paid=earning.date_paid or datetime.utcnow(),
            failure_reason=None,
        )
        logger.info(f"✅ EARNING_PAID_BY_EVENT: Earning {earning.id} via {transfer.get('id')}")
        return "earning_paid"

    async def _transfer_failed(self, event_type: str, transfer: Dict[str, Any]) -> str:
        earning = await self._find_earning(transfer)
        if earning is None:
            return await self._orphan(event_type, transfer)

        if earning.status not in (EarningStatus.PAID.value, EarningStatus.PROCESSING.value):
            return "already_settled"

        reversed_ = event_type == "transfer.reversed"
        reason = "Transfer reversed" if reversed_ else "Transfer failed"
        await self.storage.update_earning(
            earning.id,
            status=EarningStatus.PENDING.value,
            failure_reason=reason,
            date_paid=None,
        )
        logger.error(f"❌ EARNING_TRANSFER_UNDONE: Earning {earning.id} back to pending ({event_type})")
        await self.reconciliation.escalate(
            ReconciliationKind.TRANSFER_REVERSED if reversed_ else ReconciliationKind.TRANSFER_FAILED,
            f"{reason} for earning {earning.id}",
            job_id=earning.job_id,
            earning_id=earning.id,
            external_reference=transfer.get("id"),
        )
        return "earning_reverted"

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def _account_updated(self, event_type: str, account: Dict[str, Any]) -> str:
        payout_account = await self.storage.get_payout_account_by_external_id(account.get("id"))
        if payout_account is None:
            logger.warning(f"⚠️ PROCESSOR_EVENT_UNKNOWN_ACCOUNT: {account.get('id')}")
            return "unknown_account"

        requirements = account.get("requirements") or {}
        info = {
            "id": account.get("id"),
            "charges_enabled": bool(account.get("charges_enabled")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
            "requirements": {
                "currently_due": list(requirements.get("currently_due") or []),
                "past_due": list(requirements.get("past_due") or []),
                "disabled_reason": requirements.get("disabled_reason"),
            },
        }
        await self.payout_coordinator.apply_account_update(payout_account.worker_id, payout_account, info)
        return "account_synced"
