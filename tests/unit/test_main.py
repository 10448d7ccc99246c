from __future__ import annotations

import importlib
from pathlib import Path

from fastapi.testclient import TestClient

from awe_supervisor.db import SqlTaskRepository
from awe_supervisor.repository import InMemoryTaskRepository


def _main_module(monkeypatch, tmp_path: Path):
    monkeypatch.setenv('AWE_STATE_ROOT', str(tmp_path / 'state'))
    monkeypatch.setenv('AWE_HOSTING_ENABLED', '0')
    monkeypatch.setenv('AWE_DRY_RUN', '1')
    return importlib.import_module('awe_supervisor.main')


def test_build_app_uses_sql_repository(monkeypatch, tmp_path: Path):
    main = _main_module(monkeypatch, tmp_path)
    app = main.build_app()

    service = app.state.container.service
    assert isinstance(service.repository, SqlTaskRepository)
    assert (tmp_path / 'state' / 'tasks.db').exists()

    client = TestClient(app)
    created = client.post('/api/tasks', json={'title': 'Write release notes', 'leader_id': 'alice'}).json()
    started = client.post(f'/api/tasks/{created["task_id"]}/start', json={'background': False}).json()
    assert started['status'] == 'completed'


def test_build_app_falls_back_to_in_memory_repo_on_bad_database_url(monkeypatch, tmp_path: Path):
    main = _main_module(monkeypatch, tmp_path)
    monkeypatch.setenv('AWE_DATABASE_URL', 'invalid+driver://bad')

    app = main.build_app()

    assert isinstance(app.state.container.service.repository, InMemoryTaskRepository)
    resp = TestClient(app).get('/healthz')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'
