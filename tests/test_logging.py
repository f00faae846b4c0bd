"""Tests for structured logging."""

import json
import logging

from edgedeploy.core.logging import JSONFormatter, LogLevel, StructuredLogger, get_logger, render_fields
from edgedeploy.state.models import DeploymentStatus


class TestRenderFields:
    """Tests for render_fields."""

    def test_deployment_coordinates_first(self):
        rendered = render_fields({"attempts": 2, "target": "a.example.com", "deployment_id": "rel-1"})
        assert rendered == "deployment_id=rel-1 target=a.example.com attempts=2"

    def test_none_dropped_and_spaces_quoted(self):
        rendered = render_fields({"error": "connection refused", "phase": None})
        assert rendered == 'error="connection refused"'

    def test_enum_values(self):
        assert render_fields({"status": DeploymentStatus.ROLLED_BACK}) == "status=rolled_back"


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_names_under_package(self):
        assert get_logger("store").name == "edgedeploy.store"
        assert StructuredLogger("edgedeploy.state.store").name == "edgedeploy.state.store"

    def test_bind_does_not_mutate_parent(self):
        parent = StructuredLogger("test")
        child = parent.bind(deployment_id="rel-1")
        assert parent.context == {}
        assert child.context == {"deployment_id": "rel-1"}

    def test_message_and_fields(self, caplog):
        caplog.set_level(logging.DEBUG, logger="edgedeploy")
        StructuredLogger("test").bind(deployment_id="rel-1").info("Phase complete", phase="assess")

        record = caplog.records[-1]
        assert record.getMessage() == "Phase complete [deployment_id=rel-1 phase=assess]"
        assert record.fields == {"deployment_id": "rel-1", "phase": "assess"}

    def test_below_level_skipped(self, caplog):
        caplog.set_level(logging.WARNING, logger="edgedeploy")
        StructuredLogger("test").debug("noise", target="a")
        assert caplog.records == []


class TestJSONFormatter:
    """Tests for JSON line output."""

    def test_fields_included(self):
        record = logging.LogRecord("edgedeploy.test", logging.WARNING, __file__, 1, "Retrying [target=a]", None, None)
        record.event = "Retrying"
        record.fields = {"target": "a", "attempt": 2}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Retrying"
        assert entry["level"] == "warning"
        assert entry["logger"] == "edgedeploy.test"
        assert entry["target"] == "a"
        assert entry["attempt"] == 2

    def test_plain_record(self):
        record = logging.LogRecord("httpx", logging.INFO, __file__, 1, "GET %s", ("/health",), None)
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "GET /health"


class TestLogLevel:
    def test_numeric(self):
        assert LogLevel.DEBUG.numeric == logging.DEBUG
        assert LogLevel.ERROR.numeric == logging.ERROR
