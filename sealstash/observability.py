"""
sealstash Observability Framework

Structured logging and tracing for the validation engine. Provides
correlation IDs, context propagation and span recording around consignment
validation and construction.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Engine Code                           │
    │  logger.info("msg", node_id=x)  with tracer.span(...)   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                 StashLogger / Tracer                     │
    │  Context propagation, correlation IDs, structured data  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    Handlers / Exporters                  │
    │  StructuredHandler (JSON lines) │ span exporters        │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sealstash.config import get_config, get_config_manager

# Context variables for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "span_id", default=""
)
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default=""
)


class Layer(Enum):
    """Engine layers for categorization."""
    SCHEMA = "schema"
    SEAL = "seal"
    COMMITMENT = "commitment"
    GRAPH = "graph"
    STASH = "stash"
    CONSIGNMENT = "consignment"
    DISCLOSURE = "disclosure"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    trace_id: str = ""
    span_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class Span:
    """
    Tracing span.

    Represents a unit of work (validating or building a consignment)
    with timing, attributes and parent-child relationships.
    """
    trace_id: str
    span_id: str
    parent_span_id: str = ""
    name: str = ""
    layer: str = ""
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None
    status: str = "ok"
    attributes: Dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        """Set a span attribute."""
        self.attributes[key] = value

    def set_status(self, status: str, message: str = "") -> None:
        """Set span status."""
        self.status = status
        if message:
            self.attributes["status_message"] = message

    def end(self) -> None:
        """End the span."""
        if self.end_time is None:
            self.end_time = time.monotonic()

    @property
    def duration_ms(self) -> float:
        """Get span duration in milliseconds."""
        end = self.end_time or time.monotonic()
        return (end - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "layer": self.layer,
            "duration_ms": round(self.duration_ms, 2),
            "status": self.status,
            "attributes": self.attributes,
        }


class SpanContext:
    """Context manager for spans."""

    def __init__(self, tracer: "Tracer", name: str, layer: Layer, **attributes: Any):
        self.tracer = tracer
        self.name = name
        self.layer = layer
        self.attributes = attributes
        self.span: Optional[Span] = None
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.name, self.layer, **self.attributes)
        self._token = span_id_var.set(self.span.span_id)
        return self.span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.span:
            if exc_type:
                self.span.set_status("error", str(exc_val))
                self.span.set_attribute("exception_type", exc_type.__name__)
            self.tracer.end_span(self.span)
        if self._token:
            span_id_var.reset(self._token)


class Tracer:
    """
    Tracing implementation.

    Creates spans and hands finished spans to registered exporters.
    """

    def __init__(self, service_name: str = "sealstash"):
        self.service_name = service_name
        self._spans: Dict[str, Span] = {}
        self._lock = threading.RLock()
        self._exporters: List[Callable[[Span], None]] = []

    def add_exporter(self, exporter: Callable[[Span], None]) -> None:
        """Add a span exporter."""
        with self._lock:
            self._exporters.append(exporter)

    def start_trace(self) -> str:
        """Start a new trace and return trace ID."""
        trace_id = uuid.uuid4().hex
        trace_id_var.set(trace_id)
        return trace_id

    def start_span(self, name: str, layer: Layer, **attributes: Any) -> Span:
        """Start a new span."""
        trace_id = trace_id_var.get() or self.start_trace()
        span = Span(
            trace_id=trace_id,
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=span_id_var.get(),
            name=name,
            layer=layer.value,
            attributes=attributes,
        )
        with self._lock:
            self._spans[span.span_id] = span
        return span

    def end_span(self, span: Span) -> None:
        """End and export a span."""
        span.end()
        with self._lock:
            self._spans.pop(span.span_id, None)
            exporters = list(self._exporters)

        if not get_config().observability.enable_tracing.get():
            return
        for exporter in exporters:
            try:
                exporter(span)
            except Exception:
                logging.getLogger(__name__).exception("span exporter failed for %s", span.name)

    def span(self, name: str, layer: Layer, **attributes: Any) -> SpanContext:
        """Create a span context manager."""
        return SpanContext(self, name, layer, **attributes)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                trace_id=trace_id_var.get(),
                span_id=span_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            if get_config().observability.log_format.get() == "text":
                line = f"{event.timestamp} {event.level.upper()} {event.logger} {event.message}"
                if event.context:
                    line += " " + json.dumps(event.context, default=str, sort_keys=True)
            else:
                line = event.to_json()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


ROOT_LOGGER_NAME = "sealstash"


def apply_log_level(level_name: str) -> None:
    """Set the level every sealstash logger inherits."""
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(getattr(logging, level_name.upper()))


class StashLogger:
    """
    Structured logger for sealstash components.

    Automatically includes correlation IDs, trace context,
    and layer information in all log events.
    """

    def __init__(self, name: str, layer: Layer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Internal log method."""
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        """Log critical message."""
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(level, f"Operation {name} {status}", operation=name, duration_ms=duration_ms, **context)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


_tracer: Optional[Tracer] = None
_tracer_lock = threading.Lock()


def get_tracer() -> Tracer:
    """Get the global tracer instance."""
    global _tracer
    with _tracer_lock:
        if _tracer is None:
            _tracer = Tracer()
        return _tracer


def get_logger(name: str, layer: Layer) -> StashLogger:
    """Get a logger for a sealstash component."""
    return StashLogger(name, layer)


apply_log_level(get_config().observability.log_level.get())
get_config_manager().watch("observability.log_level", apply_log_level)
