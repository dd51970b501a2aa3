#!/usr/bin/env python3
"""
Payment engine entrypoint

Startup sequence:
- logging and configuration summary
- database tables
- engine start (store ping, monitor rebuild)
- background scheduler (monitor poll, store health check, payout batch)
"""

import asyncio
import logging
import signal
import sys
from config import Config
from database import create_tables, dispose_engine, get_async_session_factory, get_pool_stats, verify_connection
from jobs.scheduler import EngineScheduler
from services.payment_engine import PaymentEngine
from utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def run() -> int:
    setup_logging()
    Config.log_engine_config()

    logger.info("🗄️ Initializing database...")
    if not await verify_connection():
        logger.error("❌ Database unreachable, aborting startup")
        return 1
    if not await create_tables():
        logger.error("❌ Database initialization failed, aborting startup")
        return 1

    logger.info(f"📊 DB_POOL: {get_pool_stats()}")
    engine = PaymentEngine(session_factory=get_async_session_factory())
    # Polling is driven by the scheduler rather than the monitor's own loop
    await engine.start(monitor_loop=False)

    scheduler = EngineScheduler(engine)
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    logger.info("✅ Payment engine running")
    try:
        await stop_event.wait()
    finally:
        logger.info("🛑 Shutting down payment engine...")
        scheduler.shutdown()
        await engine.stop()
        await dispose_engine()
    return 0


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
