"""Logging setup for the API process and CLI scripts."""
import logging
import sys
from typing import Optional

from dumpsync.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once: one stream handler, level from LOG_LEVEL."""
    level_name = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if any(getattr(h, "_dumpsync", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._dumpsync = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # paramiko is chatty at INFO (banner, auth, channel open)
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
