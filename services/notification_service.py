"""
Notification Service
Writes in-app notifications for posters and workers. Delivery is
fire-and-forget: a failed notification is logged and never fails the money
operation that triggered it.
"""

import logging
from typing import Optional
from services.storage import EngineStorage

logger = logging.getLogger(__name__)


class NotificationService:
    """In-app notifications for engine events"""

    def __init__(self, storage: EngineStorage):
        self.storage = storage
        self.failures = 0

    async def notify(
        self,
        user_id: Optional[int],
        title: str,
        message: str,
        notification_type: str = "info",
        source_type: str = None,
        source_id: int = None,
    ) -> bool:
        if user_id is None:
            return False
        try:
            await self.storage.create_notification(
                user_id=user_id,
                title=title,
                message=message,
                type=notification_type,
                source_type=source_type,
                source_id=source_id,
            )
            logger.debug(f"🔔 NOTIFICATION: '{title}' -> user {user_id}")
            return True
        except Exception as e:
            self.failures += 1
            logger.warning(f"⚠️ NOTIFICATION_FAILED: '{title}' for user {user_id}: {e}")
            return False

    async def payment_failed(self, poster_id: int, job_id: int, reason: str):
        await self.notify(
            poster_id,
            "Payment Failed",
            f"Payment for your job could not be completed: {reason}",
            "payment",
            "job",
            job_id,
        )

    async def job_posted(self, poster_id: int, job_id: int, title: str):
        await self.notify(
            poster_id,
            "Job Posted",
            f"Payment received. Your job '{title}' is now live.",
            "job",
            "job",
            job_id,
        )

    async def payment_received(self, worker_id: int, job_id: int, amount):
        await self.notify(
            worker_id,
            "Payment Received",
            f"You received ${amount} for your completed job.",
            "payment",
            "job",
            job_id,
        )

    async def payout_delayed(self, worker_id: int, job_id: int, reason: str):
        await self.notify(
            worker_id,
            "Payment Delayed",
            f"Your payment is delayed: {reason}",
            "payment",
            "job",
            job_id,
        )

    async def payout_setup_required(self, worker_id: int, job_id: int, amount):
        await self.notify(
            worker_id,
            "Complete Payout Setup",
            f"You earned ${amount}. Finish setting up your payout account to receive it.",
            "payment",
            "job",
            job_id,
        )

    async def payout_account_attention(self, worker_id: int, account_id: int, requirements):
        items = ", ".join(requirements) if requirements else "additional verification"
        await self.notify(
            worker_id,
            "Payout Account Needs Attention",
            f"Your payout account needs more information before payments can be sent: {items}.",
            "payment",
            "payout_account",
            account_id,
        )

    async def payout_account_disabled(self, worker_id: int, account_id: int, reason: str = None):
        detail = f" ({reason})" if reason else ""
        await self.notify(
            worker_id,
            "Payout Account Disabled",
            f"Your payout account was disabled by the payment processor{detail}. "
            f"Payments will be held until it is restored.",
            "payment",
            "payout_account",
            account_id,
        )
