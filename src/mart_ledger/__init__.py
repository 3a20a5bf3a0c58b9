"""Stock and payment ledger for retail partner marts.

Importing the package sets up ``log``, the logger shared by every layer.
Ledger activity is written in full to ``.logs/mart_ledger.log`` under the
project root (or under ``$MART_LEDGER_LOG_DIR`` when set), while the terminal
only receives informational messages and above so CLI output stays readable.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "MART_LEDGER_LOG_DIR"
LOG_FILE_NAME = "mart_ledger.log"


def resolve_log_dir(environ: Mapping[str, str] = os.environ) -> Path:
    """Return the ledger log directory, honouring ``MART_LEDGER_LOG_DIR``."""
    override = environ.get(LOG_DIR_ENV, "").strip()
    return Path(override).expanduser() if override else PROJECT_ROOT / ".logs"


LOG_DIR = resolve_log_dir()
LOG_FILE = LOG_DIR / LOG_FILE_NAME


def _build_ledger_logger() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(module)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        ledger_file = RotatingFileHandler(LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    except OSError as exc:
        print(f"mart-ledger: file logging disabled, cannot write '{LOG_FILE}' ({exc})", file=sys.stderr)
    else:
        ledger_file.setLevel(logging.DEBUG)
        ledger_file.setFormatter(formatter)
        logger.addHandler(ledger_file)

    terminal = logging.StreamHandler(sys.stderr)
    terminal.setLevel(logging.INFO)
    terminal.setFormatter(formatter)
    logger.addHandler(terminal)

    return logger


log = _build_ledger_logger()
log.debug("Ledger logging ready, writing to '%s'", LOG_FILE)
