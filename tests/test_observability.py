"""Structured logging and span export."""

import io
import json
import logging

import pytest

from sealstash.config import get_config_manager
from sealstash.observability import (
    Layer,
    LogEvent,
    StructuredHandler,
    Tracer,
    get_correlation_id,
    get_logger,
    get_tracer,
    set_correlation_id,
)


@pytest.fixture
def captured(monkeypatch):
    logger = get_logger("capture", Layer.CONFIG)
    handler = next(h for h in logger._logger.handlers if isinstance(h, StructuredHandler))
    buf = io.StringIO()
    monkeypatch.setattr(handler, "stream", buf)
    return logger, buf


class TestStructuredLogging:

    def test_json_lines(self, captured):
        logger, buf = captured
        token = set_correlation_id("corr-test")
        logger.info("Node admitted", node_id="ab" * 32, count=2)
        event = json.loads(buf.getvalue().strip())
        assert event["message"] == "Node admitted"
        assert event["level"] == "info"
        assert event["layer"] == "config"
        assert event["logger"] == "sealstash.config.capture"
        assert event["correlation_id"] == "corr-test"
        assert event["context"] == {"node_id": "ab" * 32, "count": 2}
        from sealstash.observability import correlation_id_var
        correlation_id_var.reset(token)

    def test_warning_carries_error_code(self, captured):
        logger, buf = captured
        logger.warning("Consignment rejected", error_code="SEAL_NOT_SPENT")
        event = json.loads(buf.getvalue().strip())
        assert event["error_code"] == "SEAL_NOT_SPENT"

    def test_text_format(self, captured):
        logger, buf = captured
        get_config_manager().set("observability.log_format", "text")
        logger.info("Schema registered", name="fungible_asset")
        line = buf.getvalue().strip()
        assert "INFO sealstash.config.capture Schema registered" in line
        assert line.endswith('{"name": "fungible_asset"}')

    def test_operation(self, captured):
        logger, buf = captured
        logger.operation("validate", 12.5, success=False)
        event = json.loads(buf.getvalue().strip())
        assert event["operation"] == "validate"
        assert event["duration_ms"] == 12.5
        assert event["level"] == "warning"

    def test_level_follows_config(self, captured, tmp_path):
        logger, buf = captured
        manager = get_config_manager()
        manager.set("observability.log_level", "error")
        assert logger._logger.getEffectiveLevel() == logging.ERROR
        logger.warning("Consignment rejected")
        assert buf.getvalue() == ""

        manager.reset()
        assert get_logger("stash", Layer.STASH)._logger.getEffectiveLevel() == logging.INFO

        path = tmp_path / "sealstash.yaml"
        path.write_text("observability:\n  log_level: debug\n")
        manager.load_from_file(path)
        assert logger._logger.isEnabledFor(logging.DEBUG)

    def test_empty_values_dropped(self):
        event = LogEvent(timestamp="t", level="info", logger="l", message="m")
        assert set(event.to_dict()) == {"timestamp", "level", "logger", "message"}

    def test_correlation_id_is_generated(self):
        assert get_correlation_id().startswith("corr-")


class TestTracing:

    def test_spans_nest_and_export(self):
        tracer = Tracer()
        finished = []
        tracer.add_exporter(finished.append)
        with tracer.span("consignment.validate", Layer.CONSIGNMENT, nodes=3) as outer:
            with tracer.span("graph.add_node", Layer.GRAPH) as inner:
                pass
        assert [s.name for s in finished] == ["graph.add_node", "consignment.validate"]
        assert inner.parent_span_id == outer.span_id
        assert inner.trace_id == outer.trace_id
        assert outer.to_dict()["attributes"] == {"nodes": 3}
        assert outer.end_time is not None

    def test_errors_mark_span(self):
        tracer = Tracer()
        finished = []
        tracer.add_exporter(finished.append)
        with pytest.raises(RuntimeError):
            with tracer.span("stash.admit", Layer.STASH):
                raise RuntimeError("disk full")
        span, = finished
        assert span.status == "error"
        assert span.attributes["exception_type"] == "RuntimeError"
        assert span.attributes["status_message"] == "disk full"

    def test_disabled_tracing_skips_exporters(self):
        get_config_manager().set("observability.enable_tracing", False)
        tracer = Tracer()
        finished = []
        tracer.add_exporter(finished.append)
        with tracer.span("x", Layer.SEAL):
            pass
        assert finished == []

    def test_failing_exporter_is_contained(self):
        tracer = Tracer()
        finished = []

        def broken(span):
            raise ValueError("exporter down")

        tracer.add_exporter(broken)
        tracer.add_exporter(finished.append)
        with tracer.span("x", Layer.SEAL):
            pass
        assert len(finished) == 1

    def test_global_tracer(self):
        assert get_tracer() is get_tracer()
