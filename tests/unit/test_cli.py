from __future__ import annotations

import pytest

import awe_supervisor.cli as cli_module
from awe_supervisor.cli import build_parser


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text='ok'):
        self.status_code = int(status_code)
        self._payload = payload if payload is not None else {'ok': True}
        self.text = text

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, response=None):
        self.calls = []
        self.headers = None
        self._response = response or _FakeResponse()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def get(self, url, params=None):
        self.calls.append(('GET', url, params, None))
        return self._response

    def post(self, url, json=None, **kwargs):
        self.calls.append(('POST', url, None, json))
        return self._response


def _install(monkeypatch, fake: _FakeClient) -> None:
    def factory(timeout=60, headers=None):
        fake.headers = headers
        return fake

    monkeypatch.setattr(cli_module.httpx, 'Client', factory)


def test_cli_parser_create_collects_collaborators():
    args = build_parser().parse_args(
        [
            'create',
            '--title',
            'Write release notes',
            '--leader',
            'alice',
            '--collaborator',
            'bob',
            '--collaborator',
            'carol',
            '--mode',
            'team',
            '--auto-start',
        ]
    )
    assert args.command == 'create'
    assert args.collaborator == ['bob', 'carol']
    assert args.mode == 'team'
    assert args.auto_start is True


def test_cli_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['create', '--title', 't', '--leader', 'a', '--mode', 'swarm'])


def test_cli_main_routes_http_commands(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(status_code=200, payload={'ok': True}))
    _install(monkeypatch, fake)

    cases = [
        (['status', 'task-1'], 'GET', '/api/tasks/task-1'),
        (['progress', 'task-1'], 'GET', '/api/tasks/task-1/progress'),
        (['tasks', '--limit', '5'], 'GET', '/api/tasks'),
        (['events', 'task-1'], 'GET', '/api/tasks/task-1/events'),
        (['start', 'task-1'], 'POST', '/api/tasks/task-1/start'),
        (['say', 'task-1', 'use', 'formal', 'tone'], 'POST', '/api/tasks/task-1/messages'),
        (['pause', 'task-1', '--message', 'check scope'], 'POST', '/api/tasks/task-1/pause'),
    ]
    for argv, method, path in cases:
        assert cli_module.main(['--api-base', 'http://localhost:9000/', *argv]) == 0
        called_method, url, _, _ = fake.calls[-1]
        assert called_method == method
        assert url == f'http://localhost:9000{path}'

    by_path = {call[1]: call for call in fake.calls}
    assert by_path['http://localhost:9000/api/tasks'][2] == {'limit': 5}
    assert by_path['http://localhost:9000/api/tasks/task-1/events'][2] is None
    assert by_path['http://localhost:9000/api/tasks/task-1/start'][3] == {'background': True}
    assert by_path['http://localhost:9000/api/tasks/task-1/messages'][3] == {'message': 'use formal tone'}
    assert by_path['http://localhost:9000/api/tasks/task-1/pause'][3] == {'message': 'check scope'}
    assert '"ok": true' in capsys.readouterr().out


def test_cli_main_create_posts_task_payload(monkeypatch):
    fake = _FakeClient()
    _install(monkeypatch, fake)

    code = cli_module.main(
        ['create', '--title', 'Write release notes', '--leader', 'alice', '--collaborator', 'bob']
    )

    assert code == 0
    method, url, _, payload = fake.calls[-1]
    assert (method, url) == ('POST', 'http://127.0.0.1:8000/api/tasks')
    assert payload == {
        'title': 'Write release notes',
        'description': '',
        'leader_id': 'alice',
        'collaborators': ['bob'],
        'execution_mode': None,
        'auto_start': False,
    }


def test_cli_start_foreground_and_event_limit(monkeypatch):
    fake = _FakeClient()
    _install(monkeypatch, fake)
    cli_module.main(['start', 'task-1', '--foreground'])
    assert fake.calls[-1][3] == {'background': False}
    cli_module.main(['events', 'task-1', '--limit', '3'])
    assert fake.calls[-1][2] == {'limit': 3}


def test_cli_sends_api_token_header(monkeypatch):
    fake = _FakeClient()
    _install(monkeypatch, fake)
    cli_module.main(['--api-token', 's3cret', 'tasks'])
    assert fake.headers == {'x-awe-api-token': 's3cret'}
    cli_module.main(['--api-token', '', 'tasks'])
    assert fake.headers == {}


def test_cli_main_http_error_returns_non_zero(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(status_code=404, payload={'detail': 'task not found'}, text='not found'))
    _install(monkeypatch, fake)

    assert cli_module.main(['status', 'missing']) == 1
    assert 'HTTP 404: not found' in capsys.readouterr().err
