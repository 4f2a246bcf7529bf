"""Tests for trace propagation, access logging and the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from api.middleware.json_formatter import JSONFormatter
from api.middleware.trace_context import TraceLoggingFilter, TraceParent, current_trace_id

_TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
_PARENT = f"00-{_TRACE_ID}-00f067aa0ba902b7-01"


class TestTraceParent:
    def test_parse_valid(self) -> None:
        parsed = TraceParent.parse(_PARENT)
        assert parsed == TraceParent(trace_id=_TRACE_ID, parent_span_id="00f067aa0ba902b7", flags="01")

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "garbage",
            f"00-{'0' * 32}-00f067aa0ba902b7-01",
            f"00-{_TRACE_ID}-{'0' * 16}-01",
            f"ff-{_TRACE_ID}-00f067aa0ba902b7-01",
        ],
    )
    def test_parse_invalid(self, header: str | None) -> None:
        assert TraceParent.parse(header) is None

    def test_no_trace_outside_request(self) -> None:
        assert current_trace_id() == ""


class TestTraceMiddleware:
    @pytest.mark.asyncio
    async def test_continues_incoming_trace(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"traceparent": _PARENT})
        assert resp.headers["X-Trace-ID"] == _TRACE_ID

    @pytest.mark.asyncio
    async def test_starts_trace_when_absent(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Trace-ID"]) == 32
        assert resp.headers["X-Trace-ID"] != _TRACE_ID


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_access_record_masks_authorization(self, client, admin_headers, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="api.access"):
            await client.get("/api/v1/usage/alerts", params={"workspace_id": "ws-api-000777"}, headers=admin_headers)

        records = [r for r in caplog.records if r.name == "api.access"]
        assert records
        payload = records[-1].request
        assert payload["status_code"] == 200
        assert payload["principal"] == "test-user"
        assert payload["role"] == "admin"
        assert payload["headers"]["authorization"] == "***"


class TestJSONFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("api.access", logging.WARNING, __file__, 1, "GET %s -> %d", ("/x", 404), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self) -> None:
        payload = json.loads(JSONFormatter().format(self._record()))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "api.access"
        assert payload["message"] == "GET /x -> 404"
        assert "trace_id" not in payload

    def test_structured_extras(self) -> None:
        record = self._record(trace_id="abc", request={"path": "/x"})
        payload = json.loads(JSONFormatter().format(record))
        assert payload["trace_id"] == "abc"
        assert payload["request"] == {"path": "/x"}

    def test_exception_text(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_trace_filter_stamps_record(self) -> None:
        record = self._record()
        assert TraceLoggingFilter().filter(record) is True
        assert record.trace_id == ""
        assert record.span_id == ""
