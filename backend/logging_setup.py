"""Logging configuration for the server and background workers."""

import logging
from datetime import datetime
from pathlib import Path

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'

# Reconciliation candidates (stranded funds, stuck positions) also go to their own file
RECONCILIATION_LOGGER = "reconciliation"


def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """Setup comprehensive logging for audit trail"""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    day = datetime.now().strftime('%Y%m%d')

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # File handler - all logs
    file_handler = logging.FileHandler(f"{log_dir}/transfer_arb_{day}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Reconciliation-specific log
    reconciliation_handler = logging.FileHandler(f"{log_dir}/reconciliation_{day}.log")
    reconciliation_handler.setLevel(logging.WARNING)
    reconciliation_handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(message)s'))

    reconciliation_logger = logging.getLogger(RECONCILIATION_LOGGER)
    reconciliation_logger.addHandler(reconciliation_handler)

    # ccxt logs every request at DEBUG
    logging.getLogger("ccxt").setLevel(logging.WARNING)

    return root
