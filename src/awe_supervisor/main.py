from __future__ import annotations

import logging

from awe_supervisor.api import create_app
from awe_supervisor.config import load_settings
from awe_supervisor.db import Database, SqlTaskRepository
from awe_supervisor.observability import configure_observability
from awe_supervisor.repository import InMemoryTaskRepository
from awe_supervisor.service import build_service

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    settings.state_root.mkdir(parents=True, exist_ok=True)
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        log_file=settings.state_root / 'supervisor.log',
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlTaskRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryTaskRepository()

    if settings.dry_run:
        _log.warning('dry-run mode: agent processes will not be spawned')
    return create_app(service=build_service(settings, repository=repo))


app = build_app()
