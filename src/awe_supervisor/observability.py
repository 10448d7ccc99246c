from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
from pathlib import Path
import sys
from threading import Lock
from typing import Iterator

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_round_var: ContextVar[int | None] = ContextVar('round_no', default=None)
_phase_var: ContextVar[str | None] = ContextVar('phase', default=None)


def set_task_context(
    task_id: str | None = None,
    round_no: int | None = None,
    phase: str | None = None,
) -> None:
    """Set correlation context for structured log output."""
    _task_id_var.set(task_id)
    _round_var.set(round_no)
    _phase_var.set(phase)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_round_no() -> int | None:
    return _round_var.get(None)


def get_phase() -> str | None:
    return _phase_var.get(None)


@contextmanager
def task_context(
    task_id: str | None = None,
    *,
    round_no: int | None = None,
    phase: str | None = None,
) -> Iterator[None]:
    """Scope correlation fields to a block; unset fields inherit the outer value."""
    tokens = []
    if task_id is not None:
        tokens.append((_task_id_var, _task_id_var.set(task_id)))
    if round_no is not None:
        tokens.append((_round_var, _round_var.set(round_no)))
    if phase is not None:
        tokens.append((_phase_var, _phase_var.set(phase)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _get_tracer():
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer('awe_supervisor')


@contextmanager
def trace_span(name: str, **attributes) -> Iterator[object | None]:
    """Wrap a supervision phase in a tracing span; a no-op without opentelemetry.

    ``None`` attribute values are skipped. Exceptions raised inside the block
    are recorded on the span and propagate unchanged.
    """
    tracer = _get_tracer()
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying task/round/phase correlation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        task_id = getattr(record, 'task_id', None) or _task_id_var.get(None)
        if task_id:
            payload['task_id'] = task_id
        round_no = getattr(record, 'round_no', None) or _round_var.get(None)
        if round_no is not None:
            payload['round'] = round_no
        phase = getattr(record, 'phase', None) or _phase_var.get(None)
        if phase:
            payload['phase'] = phase
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_log_file: Path | None = None
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _has_json_handler(logger: logging.Logger, handler_type: type[logging.Handler]) -> bool:
    return any(
        type(handler) is handler_type and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
        for handler in logger.handlers
    )


def configure_observability(
    *,
    service_name: str,
    otlp_endpoint: str | None,
    log_file: Path | None = None,
    level: int = logging.INFO,
) -> None:
    """Install JSON logging on the package logger; idempotent across calls."""
    global _configured
    global _configured_log_file
    global _configured_otlp_endpoint
    root = logging.getLogger('awe_supervisor')
    with _configure_lock:
        if not _configured:
            if not _has_json_handler(root, logging.StreamHandler):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(level)
            _configured = True
        if log_file is not None and _configured_log_file != Path(log_file):
            target = Path(log_file)
            target.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(target, encoding='utf-8')
            file_handler.setFormatter(_JsonFormatter())
            root.addHandler(file_handler)
            _configured_log_file = target

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logging.getLogger('awe_supervisor.observability').warning(
            'opentelemetry not installed; tracing disabled endpoint=%s', endpoint, exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
