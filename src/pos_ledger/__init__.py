"""POS settlement ledger backed by an Excel workbook.

Importing the package configures the shared ``log`` object used by every
layer. Records go to a rotating file under ``.logs/`` (or the directory named
by ``POS_LEDGER_LOG_DIR``); only warnings and errors reach the console so
report output printed by the CLI stays readable.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("POS_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "pos_ledger.log"
LOG_LEVEL = os.environ.get("POS_LEDGER_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        ledger_handler = RotatingFileHandler(LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
        ledger_handler.setFormatter(formatter)
        logger.addHandler(ledger_handler)
    except OSError as exc:
        print(f"Warning: ledger log file '{LOG_FILE}' unavailable: {exc}", file=sys.stderr)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)

    return logger


log = _configure_logging()
log.debug("pos_ledger %s logging to '%s'", __version__, LOG_FILE)
