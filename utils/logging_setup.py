"""Root logger configuration for the engine process"""

import logging
from typing import Optional
from config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Libraries that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "apscheduler", "stripe")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the root logger from Config (or explicit overrides)"""
    level_name = (level or Config.LOG_LEVEL or "INFO").upper()
    handlers = [logging.StreamHandler()]
    target_file = log_file if log_file is not None else Config.LOG_FILE
    if target_file:
        handlers.append(logging.FileHandler(target_file))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root = logging.getLogger()
    root.debug(f"Logging configured at {level_name}" + (f" -> {target_file}" if target_file else ""))
    return root
