"""Billing ledger: invoices, payments, stock valuation and the cash/bank mirror.

Every module logs through :data:`log`. Records go to a rotating file under
``.logs/`` at the project root and to stderr; :func:`set_log_level` lets the
CLI raise the verbosity for a single run.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "billing_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5


def _build_file_handler() -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: ledger log file unavailable at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in (_build_file_handler(), logging.StreamHandler(sys.stderr)):
        if handler is None:
            continue
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def set_log_level(level: Union[int, str]) -> None:
    """Change the verbosity of the ``billing_ledger`` logger."""
    log.setLevel(level)


log = _configure_logging()
log.debug("Ledger logging configured (file: %s)", LOG_FILE)
