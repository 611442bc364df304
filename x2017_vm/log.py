"""
x2017 VM — Logging Setup

Console output goes through rich's RichHandler on stderr; an optional log
file captures everything at DEBUG with the toolkit's file format. Program
output (PRINT) never goes through logging.

Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


def setup_logging(
    name: str = "x2017_vm",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Configure and return the package logger.

    The console handler is created once; later calls only change its level.
    Each call replaces the log file: a new one under log_dir, or none.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    console = next((h for h in logger.handlers if isinstance(h, RichHandler)), None)
    if console is None:
        console = RichHandler(
            console=Console(stderr=True),
            show_time=False,
            show_path=False,
            markup=False,
        )
        logger.addHandler(console)
    console.setLevel(console_level)

    for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(handler)
        handler.close()

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(log_dir / f"{name}_{ts}.log",
                                           encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    return logger
