from __future__ import annotations

import logging
import sys

from pushdispatch.core.config import get_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once for scripts and workers; library modules only call getLogger.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    # httpx logs every request URL at INFO; keep run logs to dispatcher events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
