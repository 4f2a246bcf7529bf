"""Single-line JSON log formatter.

Activated with ``API_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with one ``StreamHandler`` using this
formatter.  Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "api.access",
        "message": "GET /api/v1/usage/summary -> 200",
        "trace_id": "...",            // when TraceLoggingFilter is attached
        "request": { ... },           // access records
        "alert": { ... },             // alert deliveries
        "exc_info": "Traceback ..."   // exceptions only
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra=`` keys copied verbatim into the JSON object when present.
_STRUCTURED_EXTRAS: tuple[str, ...] = ("trace_id", "span_id", "request", "alert")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _STRUCTURED_EXTRAS:
            value = getattr(record, key, None)
            if value:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
