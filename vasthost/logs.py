"""Logger setup: rich console handler plus an append-only log file."""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from vasthost.ui import err_console

LOGGER_NAME: str = "vasthost"
LOG_FORMAT: str = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"

DRY_RUN_LEVEL: int = 25
logging.addLevelName(DRY_RUN_LEVEL, "DRY-RUN")


class LogLevel(Enum):
    """Levels the tool logs at, mapped onto the logging module."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    DRY_RUN = DRY_RUN_LEVEL
    WARNING = logging.WARNING
    ERROR = logging.ERROR


def log_dry_run(logger: logging.Logger, message: str) -> None:
    logger.log(DRY_RUN_LEVEL, message)


def setup_logger(log_file: Optional[Union[str, Path]] = None, verbose: bool = False) -> logging.Logger:
    """Set up and configure the vasthost logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(
        console=err_console,
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(LogLevel.DEBUG.value if verbose else LogLevel.INFO.value)
    logger.addHandler(console_handler)

    if log_file is None:
        return logger

    log_path = Path(log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
    except OSError as e:
        logger.warning(f"Could not open log file {log_path}: {e}; logging to console only")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(log_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_path}: {e}")

    return logger
