"""A basic logging helper."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(levelname)s: %(message)s"


def setup_logging(level: int | str = logging.INFO, log_file: Optional[Path] = None) -> None:
    """Configures root logging to stdout and, optionally, a UTF-8 log file."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
