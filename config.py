"""Configuration management for the GigEscrow payment engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    if ENVIRONMENT:
        IS_PRODUCTION = (ENVIRONMENT == "production")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN")) or os.getenv("DEPLOYMENT") == "1"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database configuration
    # Local development falls back to a SQLite file through aiosqlite
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./gigescrow.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Payment processor (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd").lower()

    if IS_PRODUCTION and not STRIPE_SECRET_KEY:
        logger.error("❌ Production environment detected but no STRIPE_SECRET_KEY found!")

    @staticmethod
    def _validate_fee_percentage(env_var: str, default: str = "5.0", min_val: float = 0.01, max_val: float = 20.0) -> Decimal:
        """Validate fee percentage with bounds checking"""
        try:
            value_str = os.getenv(env_var, default)
            fee = Decimal(value_str)

            if fee < Decimal(str(min_val)):
                logger.error(f"❌ {env_var}={fee}% is below minimum {min_val}%. Using default {default}%")
                return Decimal(default)

            if fee > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={fee}% exceeds maximum {max_val}%. Using default {default}%")
                return Decimal(default)

            logger.info(f"✅ {env_var}={fee:.1f}% validated successfully")
            return fee

        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    # Platform fee charged on top of the job amount, one rate for capture and payout
    SERVICE_FEE_PERCENTAGE = _validate_fee_percentage(
        "SERVICE_FEE_PERCENTAGE", "5.0", 0.01, 20.0
    )

    # Job amount bounds (USD)
    MIN_JOB_AMOUNT = Decimal(os.getenv("MIN_JOB_AMOUNT", "10.00"))
    MAX_JOB_AMOUNT = Decimal(os.getenv("MAX_JOB_AMOUNT", "10000.00"))

    # Payment status monitor
    PAYMENT_MONITOR_INTERVAL = int(os.getenv("PAYMENT_MONITOR_INTERVAL", "30"))  # seconds
    PAYMENT_MONITOR_MAX_RETRIES = int(os.getenv("PAYMENT_MONITOR_MAX_RETRIES", "3"))

    # Store resilience
    DB_RECONNECT_MAX_ATTEMPTS = int(os.getenv("DB_RECONNECT_MAX_ATTEMPTS", "5"))
    DB_RECONNECT_DELAY = float(os.getenv("DB_RECONNECT_DELAY", "5"))  # seconds
    DB_HEALTH_CHECK_INTERVAL = int(os.getenv("DB_HEALTH_CHECK_INTERVAL", "30"))  # seconds
    DB_OPERATION_RETRIES = int(os.getenv("DB_OPERATION_RETRIES", "3"))
    DB_RETRY_DELAY = float(os.getenv("DB_RETRY_DELAY", "1"))  # seconds
    STORE_QUERY_TIMEOUT = float(os.getenv("STORE_QUERY_TIMEOUT", "5"))  # seconds

    # Processor call retries
    PROCESSOR_MAX_RETRIES = int(os.getenv("PROCESSOR_MAX_RETRIES", "3"))
    PROCESSOR_RETRY_DELAY = float(os.getenv("PROCESSOR_RETRY_DELAY", "1"))  # seconds

    # Deferred payouts for workers who finished payout setup after completion
    PAYOUT_BATCH_INTERVAL = int(os.getenv("PAYOUT_BATCH_INTERVAL", "900"))  # seconds
    PAYOUT_ACCOUNT_SYNC_INTERVAL = int(os.getenv("PAYOUT_ACCOUNT_SYNC_INTERVAL", "3600"))  # seconds

    # Refunds left pending by a crash or a processor timeout
    REFUND_RECOVERY_INTERVAL = int(os.getenv("REFUND_RECOVERY_INTERVAL", "600"))  # seconds
    REFUND_RECOVERY_MIN_AGE = int(os.getenv("REFUND_RECOVERY_MIN_AGE", "300"))  # seconds
    # Stay inside the processor's 24h idempotency key retention
    REFUND_REPLAY_WINDOW = int(os.getenv("REFUND_REPLAY_WINDOW", "82800"))  # seconds

    # Processor-side reconciliation sweep
    RECONCILIATION_INTERVAL = int(os.getenv("RECONCILIATION_INTERVAL", "3600"))  # seconds
    RECONCILIATION_LOOKBACK = int(os.getenv("RECONCILIATION_LOOKBACK", "86400"))  # seconds

    # Error rate tracking
    ERROR_RATE_WINDOW = int(os.getenv("ERROR_RATE_WINDOW", "60"))  # seconds
    ERROR_RATE_THRESHOLD = int(os.getenv("ERROR_RATE_THRESHOLD", "5"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE = os.getenv("LOG_FILE")

    @classmethod
    def get_engine_config(cls) -> Dict[str, Any]:
        """Effective engine settings for startup logging and diagnostics"""
        return {
            "environment": cls.CURRENT_ENVIRONMENT,
            "currency": cls.PAYMENT_CURRENCY,
            "service_fee_percentage": str(cls.SERVICE_FEE_PERCENTAGE),
            "min_job_amount": str(cls.MIN_JOB_AMOUNT),
            "max_job_amount": str(cls.MAX_JOB_AMOUNT),
            "payment_monitor_interval": cls.PAYMENT_MONITOR_INTERVAL,
            "payment_monitor_max_retries": cls.PAYMENT_MONITOR_MAX_RETRIES,
            "db_reconnect_max_attempts": cls.DB_RECONNECT_MAX_ATTEMPTS,
            "db_reconnect_delay": cls.DB_RECONNECT_DELAY,
            "db_health_check_interval": cls.DB_HEALTH_CHECK_INTERVAL,
            "db_operation_retries": cls.DB_OPERATION_RETRIES,
            "processor_max_retries": cls.PROCESSOR_MAX_RETRIES,
            "refund_replay_window": cls.REFUND_REPLAY_WINDOW,
            "reconciliation_lookback": cls.RECONCILIATION_LOOKBACK,
            "stripe_configured": bool(cls.STRIPE_SECRET_KEY),
        }

    @classmethod
    def log_engine_config(cls):
        """Log the effective configuration at startup"""
        logger.info(f"🔧 CONFIG: Running in {cls.CURRENT_ENVIRONMENT} mode")
        for key, value in cls.get_engine_config().items():
            logger.info(f"🔧 CONFIG: {key}={value}")
