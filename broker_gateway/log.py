"""Logging setup for scripts and embedding applications.

Adapters log through a ``logging.Logger`` handed to them by the broker
selector (default: a module logger per adapter). Lifecycle events go out at
INFO, capability limitations at WARNING, transport failures at ERROR. Extra
metadata is attached with ``extra={"broker": ..., "topic": ...}``.
"""

from __future__ import annotations

import logging
from typing import Optional

from broker_gateway.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from ``LOG_LEVEL`` / ``LOG_ENABLED``.

    With ``LOG_ENABLED=false`` every record below CRITICAL+1 is dropped, which
    silences the gateway without touching call sites.
    """
    settings = settings or Settings()
    if not settings.log_enabled:
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)


def get_broker_logger(broker: str) -> logging.Logger:
    """Return the logger adapters of the given broker type log through."""
    return logging.getLogger(f"broker_gateway.brokers.{broker}")
