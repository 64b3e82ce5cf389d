"""Retail back office kept in an Excel workbook.

Importing the package sets up the ``retail_erp`` logger at ``INFO``. Once a
runtime context is loaded the ``[Logging] Level`` entry of ``config.ini`` takes
over through :func:`set_log_level`. ``RETAIL_ERP_LOG_DIR`` moves the rotating
log files away from the project's ``.logs`` folder.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RETAIL_ERP_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "retail_erp.log"
DEFAULT_LOG_LEVEL = "INFO"


def _build_file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = _build_file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    set_log_level(DEFAULT_LOG_LEVEL, logger)
    return logger


def set_log_level(level: Union[str, int], logger: Optional[logging.Logger] = None) -> int:
    """Apply ``level`` to the package logger and every handler attached to it.

    Args:
        level (str | int): A level name such as ``"DEBUG"`` or a numeric level.
        logger (logging.Logger | None): Logger to adjust; defaults to the
            package logger.

    Returns:
        int: The numeric level now in effect.

    Raises:
        ValueError: If ``level`` is not a known level name.
    """

    if isinstance(level, str):
        names = logging.getLevelNamesMapping()
        if level.strip().upper() not in names:
            raise ValueError(f"Unknown log level: {level!r}")
        level = names[level.strip().upper()]
    target = logger or logging.getLogger(__name__)
    target.setLevel(level)
    for handler in target.handlers:
        handler.setLevel(level)
    return level


log = _configure_logging()
log.info("Logger initialized for the 'retail_erp' package.")
