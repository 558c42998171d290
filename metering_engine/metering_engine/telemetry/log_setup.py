"""Root logger configuration for the metering engine processes."""

from __future__ import annotations

import logging

from metering_engine.config import Settings
from metering_engine.telemetry.json_formatter import JSONFormatter

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Install a single stream handler on the root logger.

    With ``structured_logging`` enabled the handler emits one JSON object per
    line; otherwise it uses a plain text format.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    # SQLAlchemy engine logging is far too chatty at INFO.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    if settings.structured_logging:
        logging.getLogger(__name__).info("Structured JSON logging enabled")
