#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
audit_logging.py

Run-log setup for the Shopify catalog audit.

Each run of shopify_audit.py writes one log file:

    <log dir>/run_YYYYMMDD_HHMMSS.txt

The log dir is AUDIT_LOG_DIR when set, otherwise ~/.shopify_audit/logs.
Only the most recent KEEP_RUN_LOGS files are kept.

setup_logging() owns the root logger and is called once by the CLI, which
takes its own logger from get_logger(). Library modules just use
logging.getLogger(__name__) and never configure handlers.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Optional

DEFAULT_LOG_ROOT = "~/.shopify_audit/logs"
KEEP_RUN_LOGS = 30

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Third-party loggers that are only useful when debugging the transport.
NOISY_LOGGERS = ("urllib3", "requests")


def _resolve_log_root(log_root: Optional[str]) -> str:
    root = log_root or os.getenv("AUDIT_LOG_DIR") or DEFAULT_LOG_ROOT
    root = os.path.expanduser(root)
    os.makedirs(root, exist_ok=True)
    return root


def _prune_run_logs(log_root: str, keep: int) -> None:
    runs = sorted(
        name for name in os.listdir(log_root) if name.startswith("run_") and name.endswith(".txt")
    )
    for name in runs[:-keep] if keep > 0 else []:
        try:
            os.remove(os.path.join(log_root, name))
        except OSError as exc:
            logging.getLogger(__name__).warning("Could not remove old run log %s: %s", name, exc)


def setup_logging(
    level: int = logging.DEBUG,
    log_root: Optional[str] = None,
    console_level: int = logging.INFO,
    keep: int = KEEP_RUN_LOGS,
) -> str:
    """
    Route all logging to a fresh run log file and the console.

    Existing root handlers are removed first. Returns the log file path.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    log_root = _resolve_log_root(log_root)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_root, f"run_{stamp}.txt")

    to_file = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    to_file.setLevel(level)
    to_file.setFormatter(logging.Formatter(FILE_FORMAT))

    to_console = logging.StreamHandler()
    to_console.setLevel(console_level)
    to_console.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    root_logger.setLevel(min(level, console_level))
    root_logger.addHandler(to_file)
    root_logger.addHandler(to_console)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _prune_run_logs(log_root, keep)
    root_logger.info("Audit run log: %s", log_file)
    return log_file


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "shopaudit")
