from __future__ import annotations

import logging
import sys

from syncwarden.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("httpx", "sqlalchemy.engine", "arq.worker")


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; repeat calls only adjust the level.
    name = (level or get_settings().log_level or "INFO").upper()
    resolved = getattr(logging, name, logging.INFO)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    if not any(getattr(handler, "_syncwarden", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._syncwarden = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))
