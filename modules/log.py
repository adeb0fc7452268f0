"""Logging initialization using loguru."""

from __future__ import annotations

from pathlib import Path
import sys

from loguru import logger

import config


def init_logging(log_dir: str | None = None, level: str = "INFO") -> None:
    """Send logs to stderr and to a rotating file under ``log_dir``."""
    if log_dir is None:
        log_dir = config.LOG_DIR
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.add(
        str(log_path / "station_{time:YYYYMMDD}.log"),
        rotation="10 MB",
        retention="10 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        level=level,
    )
