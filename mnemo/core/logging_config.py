"""
Centralized logging configuration.
"""

import logging
import sys
from typing import Optional

from config.settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once at process start."""
    level = (level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format=LOG_FORMAT,
                        handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (usually __name__), at the configured level."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
