from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol
from uuid import uuid4

from awe_supervisor.domain.task import TaskState


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_task_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class TaskCreateRecord:
    title: str
    description: str
    leader_id: str
    collaborators: list[str] = field(default_factory=list)
    execution_mode: str = 'solo'


class TaskRepository(Protocol):
    def create_task_record(self, record: TaskCreateRecord) -> dict:
        ...

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def update_task_status(self, task_id: str, *, status: str, reason: str | None) -> dict:
        ...

    def set_repo_url(self, task_id: str, repo_url: str) -> dict:
        """Store the resolved repository URL once.

        A later call with a different URL leaves the stored value untouched;
        callers read the returned row to learn the effective URL.
        """
        ...


class InMemoryTaskRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self._lock = Lock()

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        now = _utc_now_iso()
        row = {
            'task_id': new_task_id(),
            'title': record.title,
            'description': record.description,
            'leader_id': record.leader_id,
            'collaborators': list(record.collaborators),
            'execution_mode': record.execution_mode,
            'repo_url': None,
            'status': TaskState.QUEUED.value,
            'last_reason': None,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.items[row['task_id']] = row
        return dict(row)

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = sorted(self.items.values(), key=lambda row: row['created_at'], reverse=True)
        return [dict(row) for row in rows[: max(0, int(limit))]]

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
        return dict(row) if row is not None else None

    def update_task_status(self, task_id: str, *, status: str, reason: str | None) -> dict:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            row['status'] = status
            row['last_reason'] = reason
            row['updated_at'] = _utc_now_iso()
            return dict(row)

    def set_repo_url(self, task_id: str, repo_url: str) -> dict:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            if not row.get('repo_url'):
                row['repo_url'] = str(repo_url or '').strip() or None
                row['updated_at'] = _utc_now_iso()
            return dict(row)
