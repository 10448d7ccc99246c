from __future__ import annotations

import json
import logging
from pathlib import Path
import sys

import pytest

import awe_supervisor.observability as observability
from awe_supervisor.observability import (
    _JsonFormatter,
    configure_observability,
    get_logger,
    get_phase,
    get_round_no,
    get_task_id,
    set_task_context,
    task_context,
    trace_span,
)


def _format(name: str, level: int, msg: str, args=(), exc_info=None) -> dict:
    logger = get_logger(name)
    record = logger.makeRecord(name, level, 'test.py', 1, msg, args, exc_info)
    return json.loads(_JsonFormatter().format(record))


def test_configure_observability_is_idempotent_and_adds_file_handler(monkeypatch, tmp_path: Path):
    root = logging.getLogger('awe_supervisor')
    monkeypatch.setattr(root, 'handlers', [])
    monkeypatch.setattr(root, 'level', root.level)
    monkeypatch.setattr(observability, '_configured', False)
    monkeypatch.setattr(observability, '_configured_log_file', None)
    monkeypatch.setattr(observability, '_configured_otlp_endpoint', None)

    log_file = tmp_path / 'logs' / 'supervisor.log'
    configure_observability(service_name='awe-supervisor', otlp_endpoint=None, log_file=log_file)
    configure_observability(service_name='awe-supervisor', otlp_endpoint=None, log_file=log_file)

    stream_handlers = [h for h in root.handlers if type(h) is logging.StreamHandler]
    file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    assert len(stream_handlers) == 1
    assert len(file_handlers) == 1

    with task_context('task-file', phase='run'):
        get_logger('awe_supervisor.test').info('written key=%s', 'value')
    for handler in file_handlers:
        handler.flush()
        handler.close()

    lines = [json.loads(line) for line in log_file.read_text(encoding='utf-8').splitlines() if line.strip()]
    assert lines[-1]['msg'] == 'written key=value'
    assert lines[-1]['task_id'] == 'task-file'
    assert lines[-1]['phase'] == 'run'


def test_set_and_get_task_context():
    set_task_context(task_id='abc-123', round_no=2, phase='alignment')
    assert get_task_id() == 'abc-123'
    assert get_round_no() == 2
    assert get_phase() == 'alignment'
    set_task_context()
    assert get_task_id() is None
    assert get_round_no() is None
    assert get_phase() is None


def test_task_context_nests_and_restores():
    set_task_context()
    with task_context('outer', phase='supervise'):
        with task_context(round_no=4, phase='alignment'):
            assert get_task_id() == 'outer'
            assert get_round_no() == 4
            assert get_phase() == 'alignment'
        assert get_round_no() is None
        assert get_phase() == 'supervise'
    assert get_task_id() is None


def test_json_formatter_includes_correlation_fields():
    with task_context('tid-1', round_no=3, phase='alignment'):
        parsed = _format('awe_supervisor.test_fmt', logging.INFO, 'hello %s', ('world',))
    assert parsed['msg'] == 'hello world'
    assert parsed['task_id'] == 'tid-1'
    assert parsed['round'] == 3
    assert parsed['phase'] == 'alignment'
    assert parsed['level'] == 'INFO'
    assert parsed['logger'] == 'awe_supervisor.test_fmt'


def test_json_formatter_omits_missing_correlation():
    set_task_context()
    parsed = _format('awe_supervisor.test_fmt2', logging.WARNING, 'no context')
    assert 'task_id' not in parsed
    assert 'round' not in parsed
    assert 'phase' not in parsed


def test_json_formatter_includes_exception():
    try:
        raise ValueError('boom')
    except ValueError:
        exc_info = sys.exc_info()
    parsed = _format('awe_supervisor.test_exc', logging.ERROR, 'failed', exc_info=exc_info)
    assert 'boom' in parsed['exc']


class _RecordingSpan:
    def __init__(self, name: str, spans: list):
        self.name = name
        self.attributes: dict = {}
        self.spans = spans

    def __enter__(self):
        self.spans.append(self)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.error = exc
        return False

    def set_attribute(self, key, value):
        self.attributes[key] = value


class RecordingTracer:
    def __init__(self):
        self.spans: list[_RecordingSpan] = []

    def start_as_current_span(self, name: str):
        return _RecordingSpan(name, self.spans)


def test_trace_span_records_attributes_and_skips_none(monkeypatch):
    tracer = RecordingTracer()
    monkeypatch.setattr(observability, '_get_tracer', lambda: tracer)

    with trace_span('supervisor.run', task_id='t1', attempt=None, resumed=False) as span:
        assert span is tracer.spans[0]

    assert tracer.spans[0].name == 'supervisor.run'
    assert tracer.spans[0].attributes == {'task_id': 't1', 'resumed': False}


def test_trace_span_propagates_errors(monkeypatch):
    tracer = RecordingTracer()
    monkeypatch.setattr(observability, '_get_tracer', lambda: tracer)

    with pytest.raises(RuntimeError):
        with trace_span('alignment.round', round=1):
            raise RuntimeError('boom')

    assert isinstance(tracer.spans[0].error, RuntimeError)


def test_trace_span_is_noop_without_tracer(monkeypatch):
    monkeypatch.setattr(observability, '_get_tracer', lambda: None)
    with trace_span('supervisor.validate', task_id='t1') as span:
        assert span is None
