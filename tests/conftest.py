"""
Shared fixtures for payment engine tests

Key Components:
1. In-memory SQLite database (aiosqlite + StaticPool) created per test
2. FakeStripeProcessor: AsyncMock-backed processor double returning Stripe-shaped dicts
3. PaymentEngine wired with zero retry delays and a mocked sleep
4. Helpers for funded jobs and payout accounts
"""

import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from database import build_async_engine, build_session_factory, create_tables
from models import JobStatus, PayoutAccountStatus
from services.error_classifier import ErrorClassificationService
from services.event_channel import EventChannel
from services.payment_engine import PaymentEngine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

POSTER_ID = 1001
WORKER_ID = 2002
OTHER_USER_ID = 3003
ADMIN_ID = 9001


class FakeStripeProcessor:
    """
    Processor double with the StripePaymentProcessor interface.

    Each method is an AsyncMock, so tests can assert calls or replace
    side_effect with an exception or a different response.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.intent_status = "succeeded"
        self.retrieve_status = "processing"
        self.last_error: Optional[str] = None
        self.account_info: Dict[str, Any] = {
            "charges_enabled": True,
            "payouts_enabled": True,
            "requirements": {"currently_due": [], "past_due": [], "disabled_reason": None},
        }
        # Intents created through this double, as list_payment_intents reports them
        self.intents: List[Dict[str, Any]] = []

        self.create_payment_intent = AsyncMock(side_effect=self._create_payment_intent)
        self.retrieve_payment_intent = AsyncMock(side_effect=self._retrieve_payment_intent)
        self.confirm_payment_intent = AsyncMock(side_effect=self._retrieve_payment_intent)
        self.create_refund = AsyncMock(side_effect=self._create_refund)
        self.create_transfer = AsyncMock(side_effect=self._create_transfer)
        self.retrieve_account = AsyncMock(side_effect=self._retrieve_account)
        self.list_payment_intents = AsyncMock(side_effect=self._list_payment_intents)

    async def _create_payment_intent(self, amount, payer_ref=None, payment_method_ref=None,
                                     metadata=None, currency=None, idempotency_key=None):
        intent = {
            "id": f"pi_test_{next(self._ids)}",
            "status": self.intent_status,
            "client_secret": "pi_secret",
            "amount": amount,
            "last_error": self.last_error,
            "metadata": metadata or {},
        }
        self.intents.append(dict(intent))
        return intent

    async def _retrieve_payment_intent(self, intent_id):
        return {
            "id": intent_id,
            "status": self.retrieve_status,
            "client_secret": None,
            "amount": None,
            "last_error": self.last_error,
            "metadata": {},
        }

    async def _create_refund(self, payment_intent_id, amount=None, metadata=None, idempotency_key=None):
        return {"id": f"re_test_{next(self._ids)}", "status": "succeeded"}

    async def _create_transfer(self, amount, destination_account_ref, metadata=None,
                               currency=None, idempotency_key=None):
        return {"id": f"tr_test_{next(self._ids)}"}

    async def _retrieve_account(self, account_ref):
        return dict(self.account_info, id=account_ref)

    async def _list_payment_intents(self, created_gte, created_lte):
        return [dict(intent) for intent in self.intents]


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test"""
    engine = build_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    assert await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def processor():
    return FakeStripeProcessor()


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def classifier():
    return ErrorClassificationService(window_seconds=60, threshold=5)


@pytest.fixture
def gateway_options():
    return {
        "max_reconnect_attempts": 3,
        "reconnect_delay": 0,
        "operation_retries": 3,
        "retry_delay": 0,
        "processor_retries": 3,
        "processor_retry_delay": 0,
        "query_timeout": 2,
        "sleep": AsyncMock(),
    }


@pytest.fixture
def engine(session_factory, processor, events, classifier, gateway_options):
    return PaymentEngine(
        session_factory=session_factory,
        processor=processor,
        classifier=classifier,
        events=events,
        gateway_options=gateway_options,
        monitor_max_retries=3,
        monitor_interval=0.01,
    )


@pytest.fixture
def storage(engine):
    return engine.storage


@pytest.fixture
def create_open_job(engine):
    """Post and capture a job; returns the opened Job"""
    async def _create(amount="100.00", poster_id=POSTER_ID, title="Fix the fence"):
        result = await engine.jobs.create_job(
            poster_id=poster_id,
            title=title,
            description="Two broken panels",
            payment_amount=Decimal(amount),
            payment_method_ref="pm_card_visa",
        )
        assert result.job.status == JobStatus.OPEN.value
        return result.job

    return _create


@pytest.fixture
def create_completed_job(engine, create_open_job):
    """Open job taken through hire, start and complete"""
    async def _create(amount="100.00", worker_id=WORKER_ID):
        job = await create_open_job(amount)
        await engine.jobs.hire_worker(job.id, POSTER_ID, worker_id)
        await engine.jobs.start_job(job.id, worker_id)
        return await engine.jobs.complete_job(job.id, worker_id)

    return _create


@pytest.fixture
def activate_payout_account(storage):
    async def _activate(worker_id=WORKER_ID, external_account_id="acct_worker"):
        return await storage.upsert_payout_account(
            worker_id,
            external_account_id,
            status=PayoutAccountStatus.ACTIVE.value,
            charges_enabled=True,
            payouts_enabled=True,
        )

    return _activate
