"""W3C Trace Context propagation.

Reads an incoming ``traceparent`` header (``00-<trace>-<parent span>-<flags>``),
opens a fresh span for this service and exposes both ids through
``contextvars`` so that every log record emitted while handling the
request can be stamped with them.  The trace id is returned to the caller
in ``X-Trace-ID``.
"""

from __future__ import annotations

import contextvars
import logging
import os
import re
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")

TRACE_HEADER = "X-Trace-ID"


@dataclass(frozen=True)
class TraceParent:
    trace_id: str
    parent_span_id: str
    flags: str = "00"

    @classmethod
    def parse(cls, header: str | None) -> TraceParent | None:
        """Parse a ``traceparent`` header; ``None`` when absent or invalid."""
        if not header:
            return None
        match = _TRACEPARENT_RE.match(header.strip().lower())
        if match is None:
            logger.debug("Ignoring malformed traceparent: %s", header)
            return None
        version, trace_id, parent_span_id, flags = match.groups()
        # Version ff and all-zero ids are invalid per W3C.
        if version == "ff" or trace_id == "0" * 32 or parent_span_id == "0" * 16:
            return None
        return cls(trace_id=trace_id, parent_span_id=parent_span_id, flags=flags)


def current_trace_id() -> str:
    """Trace id of the request being handled, or ``""``."""
    return _trace_id_var.get()


def current_span_id() -> str:
    return _span_id_var.get()


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Continue the caller's trace (or start one) and open a span per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        parent = TraceParent.parse(request.headers.get("traceparent"))
        trace_id = parent.trace_id if parent else os.urandom(16).hex()
        span_id = os.urandom(8).hex()

        trace_token = _trace_id_var.set(trace_id)
        span_token = _span_id_var.set(span_id)
        request.state.trace_id = trace_id
        request.state.span_id = span_id
        request.state.parent_span_id = parent.parent_span_id if parent else ""
        try:
            response = await call_next(request)
        finally:
            _trace_id_var.reset(trace_token)
            _span_id_var.reset(span_token)

        response.headers[TRACE_HEADER] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Stamp ``trace_id`` and ``span_id`` onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        record.span_id = _span_id_var.get()  # type: ignore[attr-defined]
        return True
