"""
Process-wide logging configuration.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_INITIALIZED = False


def configure_logging(level: str = "INFO", log_path: Optional[Path] = None) -> None:
    """Install a console handler, plus a rotating file handler when log_path is given."""
    global _INITIALIZED
    if _INITIALIZED:
        return

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(str(log_path), maxBytes=1_000_000, backupCount=5))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    _INITIALIZED = True
    logging.getLogger(__name__).debug("Logging configured at %s (file: %s)", level, log_path)
