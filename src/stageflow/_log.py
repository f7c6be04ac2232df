"""Centralized logging for stageflow."""

from __future__ import annotations

import logging
import sys
import threading

_lock = threading.Lock()
_setup_done = False


class _Formatter(logging.Formatter):
    """Format log records as ``[tag] message``, stripping the ``stageflow.`` prefix."""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if name.startswith("stageflow."):
            name = name[len("stageflow.") :]
        record.msg = f"[{name}] {record.msg}"
        return super().format(record)


def setup_logging(verbose: bool = False) -> None:
    """Configure the ``stageflow`` logger once.

    WARNING by default, DEBUG when *verbose*. A later call with
    ``verbose=True`` still lowers the level.
    """
    global _setup_done
    logger = logging.getLogger("stageflow")
    with _lock:
        if verbose:
            logger.setLevel(logging.DEBUG)
        if _setup_done:
            return
        if not verbose:
            logger.setLevel(logging.WARNING)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_Formatter())
        logger.addHandler(handler)
        logger.propagate = False
        _setup_done = True


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(f"stageflow.{name}")``."""
    setup_logging()
    return logging.getLogger(f"stageflow.{name}")
