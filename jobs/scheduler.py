"""Background job scheduler for the payment engine"""

import logging
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from config import Config
from jobs.pending_payout_processor import process_pending_payouts

logger = logging.getLogger(__name__)


class EngineScheduler:
    """Interval jobs for the monitor, store health, payouts, refund recovery and processor reconciliation"""

    JOB_IDS = (
        "payment_monitor_poll",
        "store_health_check",
        "pending_payout_batch",
        "refund_recovery",
        "payout_account_sync",
        "processor_reconciliation",
    )

    def __init__(self, engine, scheduler: AsyncIOScheduler = None):
        self.engine = engine
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all engine jobs, replacing any left over from a previous setup"""
        for job_id in self.JOB_IDS:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job")

        self.scheduler.add_job(
            self.poll_payments,
            trigger=IntervalTrigger(seconds=Config.PAYMENT_MONITOR_INTERVAL),
            id="payment_monitor_poll",
            name="Payment Status Monitor Poll",
            max_instances=1,
            coalesce=True,
        )

        # Staggered so the ping does not land on the monitor tick
        self.scheduler.add_job(
            self.check_store_health,
            trigger=IntervalTrigger(
                seconds=Config.DB_HEALTH_CHECK_INTERVAL,
                start_date=datetime.now().replace(microsecond=0),
                jitter=2,
            ),
            id="store_health_check",
            name="Store Health Check",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.process_payouts,
            trigger=IntervalTrigger(seconds=Config.PAYOUT_BATCH_INTERVAL),
            id="pending_payout_batch",
            name="Pending Payout Batch",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.add_job(
            self.recover_refunds,
            trigger=IntervalTrigger(seconds=Config.REFUND_RECOVERY_INTERVAL),
            id="refund_recovery",
            name="Pending Refund Recovery",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.sync_payout_accounts,
            trigger=IntervalTrigger(seconds=Config.PAYOUT_ACCOUNT_SYNC_INTERVAL),
            id="payout_account_sync",
            name="Payout Account Sync",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.add_job(
            self.reconcile_processor,
            trigger=IntervalTrigger(seconds=Config.RECONCILIATION_INTERVAL),
            id="processor_reconciliation",
            name="Processor Reconciliation",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"✅ Engine scheduler started: {[job.id for job in jobs]}")

    def shutdown(self, wait: bool = False):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Engine scheduler stopped")

    async def poll_payments(self):
        try:
            return await self.engine.monitor.poll_once()
        except Exception as e:
            logger.error(f"❌ SCHEDULER: Payment monitor poll failed: {e}")

    async def check_store_health(self):
        try:
            result = await self.engine.gateway.health_check()
            if not result.get("healthy"):
                logger.warning(f"⚠️ SCHEDULER: Store health check reported {result.get('status')}")
            return result
        except Exception as e:
            logger.error(f"❌ SCHEDULER: Store health check failed: {e}")

    async def process_payouts(self):
        return await process_pending_payouts(self.engine)

    async def recover_refunds(self):
        try:
            return await self.engine.ledger.recover_pending_refunds()
        except Exception as e:
            logger.error(f"❌ SCHEDULER: Refund recovery failed: {e}")

    async def sync_payout_accounts(self):
        try:
            return await self.engine.payouts.sync_all_payout_accounts()
        except Exception as e:
            logger.error(f"❌ SCHEDULER: Payout account sync failed: {e}")

    async def reconcile_processor(self):
        """Compare the last lookback window of processor charges against local payments"""
        end = datetime.utcnow()
        start = end - timedelta(seconds=Config.RECONCILIATION_LOOKBACK)
        try:
            return await self.engine.reconciliation.reconcile_range(start, end)
        except Exception as e:
            logger.error(f"❌ SCHEDULER: Processor reconciliation failed: {e}")
