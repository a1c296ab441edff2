from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_mode_var: ContextVar[str | None] = ContextVar('execution_mode', default=None)
_attempt_var: ContextVar[int | None] = ContextVar('attempt', default=None)
_phase_var: ContextVar[str | None] = ContextVar('battle_phase', default=None)

# Record attributes passed via ``extra=`` win over the worker's context.
_CONTEXT_FIELDS: tuple[tuple[str, ContextVar], ...] = (
    ('task_id', _task_id_var),
    ('mode', _mode_var),
    ('attempt', _attempt_var),
    ('phase', _phase_var),
)


def set_task_context(
    task_id: str | None = None,
    mode: str | None = None,
    *,
    attempt: int | None = None,
    phase: str | None = None,
) -> None:
    """Set battle correlation fields for structured log output. Call with no arguments to clear them."""
    _task_id_var.set(task_id)
    _mode_var.set(mode)
    _attempt_var.set(attempt)
    _phase_var.set(phase)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_mode() -> str | None:
    return _mode_var.get(None)


def get_attempt() -> int | None:
    return _attempt_var.get(None)


def get_phase() -> str | None:
    return _phase_var.get(None)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: level, logger, thread, message, then battle context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'msg': record.getMessage(),
        }
        for name, var in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                value = var.get(None)
            if value is not None and value != '':
                payload[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    """Install the JSON handler on the ``battlebridge`` logger once; export spans when an endpoint is set."""
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('battlebridge')
            if not any(isinstance(getattr(h, 'formatter', None), _JsonFormatter) for h in root.handlers):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return
        provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _configured_otlp_endpoint = endpoint
    logging.getLogger('battlebridge.observability').info('span export enabled endpoint=%s', endpoint)


def get_tracer(name: str):
    """Tracer for agent-run spans; a no-op until ``configure_observability`` installs a provider."""
    return trace.get_tracer(name)


__all__ = [
    'configure_observability',
    'get_attempt',
    'get_logger',
    'get_mode',
    'get_phase',
    'get_task_id',
    'get_tracer',
    'set_task_context',
]
