"""
Reconciliation Service
Records money-state inconsistencies the engine could not settle on its own
and raises an escalation signal for operators. Also compares the processor's
view of captured charges against local payment records.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from models import PaymentStatus, ReconciliationKind, ReconciliationItem
from services.event_channel import EngineEvent, EventChannel
from services.fee_service import quantize_money
from services.payment_processor import INTENT_SUCCEEDED
from services.storage import EngineStorage

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Operational follow-up queue for escalations"""

    def __init__(self, storage: EngineStorage, events: EventChannel, processor=None, gateway=None):
        self.storage = storage
        self.events = events
        self.processor = processor
        self.gateway = gateway

    async def escalate(
        self,
        kind: ReconciliationKind,
        message: str,
        job_id: int = None,
        payment_id: int = None,
        earning_id: int = None,
        external_reference: str = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReconciliationItem]:
        """Write a reconciliation item and emit engine.escalation; never raises"""
        item = None
        payload_details = dict(details or {})
        payload_details.setdefault("message", message)
        try:
            item = await self.storage.create_reconciliation_item(
                kind,
                job_id=job_id,
                payment_id=payment_id,
                earning_id=earning_id,
                external_reference=external_reference,
                details=payload_details,
            )
        except Exception as e:
            logger.critical(
                f"🚨 RECONCILIATION_WRITE_FAILED: {kind.value} job={job_id} payment={payment_id} "
                f"ref={external_reference}: {message} (store error: {e})"
            )

        await self.events.emit(
            EngineEvent.ENGINE_ESCALATION,
            {
                "kind": kind.value,
                "message": message,
                "job_id": job_id,
                "payment_id": payment_id,
                "earning_id": earning_id,
                "external_reference": external_reference,
                "reconciliation_item_id": item.id if item else None,
            },
        )
        return item

    async def open_items(self, kind: ReconciliationKind = None) -> List[ReconciliationItem]:
        return await self.storage.list_reconciliation_items(resolved=False, kind=kind)

    async def resolve(self, item_id: int, resolved_by: int) -> ReconciliationItem:
        """Mark an escalation handled by an operator"""
        item = await self.storage.resolve_reconciliation_item(item_id)
        logger.info(f"✅ RECONCILIATION_RESOLVED: #{item_id} {item.kind} by admin {resolved_by}")
        return item

    async def reconcile_range(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Compare succeeded processor charges created in [start, end] with local payments.

        Each discrepancy is escalated once; a later run skips it while its
        reconciliation item is still open. Returns the external ids per outcome.
        """
        if self.processor is None or self.gateway is None:
            raise RuntimeError("Processor reconciliation needs a processor and a gateway")

        intents = await self.gateway.call_processor(
            lambda: self.processor.list_payment_intents(start, end),
            description=f"list payment intents {start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}",
        )
        succeeded = [i for i in intents if i.get("status") == INTENT_SUCCEEDED and i.get("id")]
        payments = await self.storage.get_payments_by_external_ids([i["id"] for i in succeeded])

        open_keys = set()
        for kind in (
            ReconciliationKind.PROCESSOR_MISSING_LOCAL,
            ReconciliationKind.PROCESSOR_AMOUNT_MISMATCH,
            ReconciliationKind.PROCESSOR_STATUS_MISMATCH,
        ):
            for item in await self.open_items(kind):
                open_keys.add((item.kind, item.external_reference))

        report = {
            "checked": len(succeeded),
            "matched": 0,
            "missing_local": [],
            "amount_mismatch": [],
            "status_mismatch": [],
            "escalated": 0,
        }

        for intent in succeeded:
            external_id = intent["id"]
            payment = payments.get(external_id)
            processor_amount = quantize_money(intent.get("amount") or 0)

            if payment is None:
                report["missing_local"].append(external_id)
                kind = ReconciliationKind.PROCESSOR_MISSING_LOCAL
                message = f"Processor charge {external_id} has no local payment record"
                details = {"processor_amount": str(processor_amount), "metadata": intent.get("metadata") or {}}
            else:
                local_amount = quantize_money(payment.amount) + quantize_money(payment.service_fee or 0)
                if processor_amount != local_amount:
                    report["amount_mismatch"].append(external_id)
                    kind = ReconciliationKind.PROCESSOR_AMOUNT_MISMATCH
                    message = (
                        f"Processor charged ${processor_amount} for {external_id}, "
                        f"payment {payment.id} recorded ${local_amount}"
                    )
                    details = {"processor_amount": str(processor_amount), "local_amount": str(local_amount)}
                elif payment.status not in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
                    report["status_mismatch"].append(external_id)
                    kind = ReconciliationKind.PROCESSOR_STATUS_MISMATCH
                    message = f"Processor charge {external_id} succeeded but payment {payment.id} is {payment.status}"
                    details = {"local_status": payment.status}
                else:
                    report["matched"] += 1
                    continue

            if (kind.value, external_id) in open_keys:
                continue
            await self.escalate(
                kind,
                message,
                job_id=payment.job_id if payment else None,
                payment_id=payment.id if payment else None,
                external_reference=external_id,
                details=details,
            )
            open_keys.add((kind.value, external_id))
            report["escalated"] += 1

        logger.info(
            f"📊 PROCESSOR_RECONCILIATION: checked={report['checked']} matched={report['matched']} "
            f"missing_local={len(report['missing_local'])} amount_mismatch={len(report['amount_mismatch'])} "
            f"status_mismatch={len(report['status_mismatch'])} escalated={report['escalated']}"
        )
        return report
