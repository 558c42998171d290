"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object containing structured
fields that downstream aggregators (Datadog, Splunk, CloudWatch Logs, ELK,
etc.) can index without regex parsing.

Activate by setting ``METERING_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "metering_engine.services.billing",
        "message": "Generated billing record ...",
        "tenant_id": "acme",         // present when passed via extra=
        "job": "aggregate_hourly",   // present when passed via extra=
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Attributes callers may attach with ``extra={...}`` that are copied into
# the JSON payload.
_CONTEXT_FIELDS = ("tenant_id", "job", "quota_type", "period_type")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
