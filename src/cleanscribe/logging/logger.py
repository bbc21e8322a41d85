# src/cleanscribe/logging/logger.py
from __future__ import annotations

import logging
from pathlib import Path


_LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_ROOT_NAME = "cleanscribe"


def get_logger(name: str = _ROOT_NAME, level: int = logging.INFO) -> logging.Logger:
    """
    Get a logger under the ``cleanscribe`` hierarchy.

    Only the package root logger owns a console handler; child loggers
    propagate to it, so a file handler added to the root by
    ``add_file_handler`` sees every stage's records.
    """
    if name != _ROOT_NAME and not name.startswith(_ROOT_NAME + "."):
        name = f"{_ROOT_NAME}.{name}"

    root = logging.getLogger(_ROOT_NAME)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(sh)
        root.setLevel(level)
        root.propagate = False

    return logging.getLogger(name)


def add_file_handler(logger: logging.Logger, log_file: str | Path, level: int = logging.INFO) -> None:
    """
    Add a file handler to an existing logger.
    Safe to call multiple times (won't duplicate).
    """
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    for h in logger.handlers:
        if isinstance(h, logging.FileHandler) and Path(getattr(h, "baseFilename", "")) == log_file.resolve():
            return

    fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(fh)
