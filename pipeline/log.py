from __future__ import annotations

import logging
import os

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Root logging setup shared by the API process and the workers."""
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=resolved, format=_FORMAT)
    # rq logs every heartbeat at INFO
    logging.getLogger("rq.worker").setLevel(os.getenv("RQ_LOG_LEVEL", "WARNING").upper())
