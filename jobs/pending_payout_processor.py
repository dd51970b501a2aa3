"""
Pending Payout Processor
Retries earnings left pending after job completion (no active payout
account at the time, or a failed transfer).
"""

import logging
from datetime import datetime
from typing import Dict

logger = logging.getLogger(__name__)


async def process_pending_payouts(engine) -> Dict[str, int]:
    """Run one payout batch; never raises so the scheduler keeps the job alive"""
    start_time = datetime.now()
    try:
        results = await engine.payouts.process_all_pending_payouts()
    except Exception as e:
        logger.error(f"❌ PENDING_PAYOUTS: Batch failed: {e}")
        return {"processed": 0, "paid": 0, "failed": 0, "skipped": 0, "error": str(e)}

    elapsed = (datetime.now() - start_time).total_seconds() * 1000
    if results.get("processed"):
        logger.info(
            f"✅ PENDING_PAYOUTS: {results['paid']}/{results['processed']} paid, "
            f"{results['failed']} failed, {results['skipped']} awaiting setup ({elapsed:.0f}ms)"
        )
    else:
        logger.debug(f"💤 PENDING_PAYOUTS: Nothing to pay ({elapsed:.0f}ms)")
    return results
