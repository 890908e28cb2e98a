"""
Request timing and structured logging tests.

Covers:
  - X-Request-ID / X-Request-Duration-Ms headers
  - JSON formatter fields
  - request-context stamping of request id and actor
  - the readable formatter's case tag
"""

import json
import logging

from flask import g

from caseflow.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


def _record(msg="transition applied", **extra):
    record = logging.LogRecord("caseflow.services.workflow_engine", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ── Request Timing ──────────────────────────────────────────────────────


class TestRequestTiming:

    def test_duration_header_present(self, client):
        res = client.get("/api/v1/health")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        assert len(client.get("/api/v1/health").headers["X-Request-ID"]) == 12

    def test_custom_request_id_passthrough(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "cron-tick-7"})
        assert res.headers["X-Request-ID"] == "cron-tick-7"

    def test_error_responses_are_timed(self, client):
        res = client.get("/api/v1/workflow/CAP/cap-1/state")
        assert res.status_code == 401
        assert "X-Request-Duration-Ms" in res.headers

    def test_rejected_content_type_is_timed(self, client):
        res = client.post("/api/v1/workflow/CAP/cap-1/start", data="x=1",
                          content_type="application/x-www-form-urlencoded")
        assert res.status_code == 415
        assert "X-Request-ID" in res.headers


# ── Structured Logging ──────────────────────────────────────────────────


class TestFormatters:

    def test_json_includes_structured_fields(self):
        line = JSONFormatter().format(_record(entity_type="CAP", entity_id="cap-1", transition="SUBMIT"))
        entry = json.loads(line)
        assert entry["message"] == "transition applied"
        assert entry["level"] == "INFO"
        assert entry["entity_type"] == "CAP"
        assert entry["transition"] == "SUBMIT"
        assert "clock_id" not in entry

    def test_readable_case_tag(self):
        line = ReadableFormatter().format(_record(entity_type="CAP", entity_id="cap-1", clock_id=4))
        assert "[CAP/cap-1]" in line
        assert line.endswith("clock=4")

    def test_readable_without_case(self):
        line = ReadableFormatter().format(_record("sweep done"))
        assert "[" not in line
        assert "sweep done" in line


class TestRequestContextFilter:

    def test_stamps_request_id_and_actor(self, app):
        with app.test_request_context("/api/v1/health"):
            g.request_id = "req-1"
            g.current_user_id = "lead-1"
            record = _record()
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "req-1"
        assert record.actor_id == "lead-1"

    def test_explicit_actor_wins(self, app):
        with app.test_request_context("/api/v1/health"):
            g.current_user_id = "lead-1"
            record = _record(actor_id="SYSTEM")
            RequestContextFilter().filter(record)
        assert record.actor_id == "SYSTEM"

    def test_outside_request_is_untouched(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert not hasattr(record, "request_id")
