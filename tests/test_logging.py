"""Tests for the structured JSON log formatter."""

import json
import logging
import sys

from storyforge.logging.logger import JSONFormatter, bind_request_id, current_request_id


def _record(**extra):
    record = logging.LogRecord(
        name="storyforge.orchestrator.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Request %s -> %s",
        args=("generating", "safety_checking"),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter("generation_service").format(_record()))

        assert entry["service"] == "generation_service"
        assert entry["level"] == "INFO"
        assert entry["message"] == "Request generating -> safety_checking"
        assert "request_id" not in entry

    def test_request_id_and_extra(self):
        entry = json.loads(
            JSONFormatter("generation_service").format(
                _record(request_id="req-1", _extra={"reason": "passed"})
            )
        )

        assert entry["request_id"] == "req-1"
        assert entry["extra"] == {"reason": "passed"}

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter("generation_service").format(record))

        assert "RuntimeError: boom" in entry["exception"]

    def test_bound_request_id(self):
        token = current_request_id.set(None)
        try:
            bind_request_id("req-bound")
            entry = json.loads(JSONFormatter("generation_service").format(_record()))
            explicit = json.loads(
                JSONFormatter("generation_service").format(_record(request_id="req-explicit"))
            )
        finally:
            current_request_id.reset(token)

        assert entry["request_id"] == "req-bound"
        assert explicit["request_id"] == "req-explicit"
