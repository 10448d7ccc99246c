from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ExecutionMode(str, Enum):
    SOLO = 'solo'
    TEAM = 'team'


class TaskState(str, Enum):
    """Registry-side lifecycle; the progress record stays the source of truth for the run."""

    QUEUED = 'queued'
    RUNNING = 'running'
    WAITING_FOR_HUMAN = 'waiting_for_human'
    COMPLETED = 'completed'
    FAILED = 'failed'


def normalize_execution_mode(value: str | ExecutionMode | None, *, collaborators: list[str] | None = None) -> str:
    if isinstance(value, ExecutionMode):
        return value.value
    text = str(value or '').strip().lower()
    if text in {ExecutionMode.SOLO.value, ExecutionMode.TEAM.value}:
        return text
    if text:
        raise ValueError(f'invalid execution_mode: {text}')
    return ExecutionMode.TEAM.value if collaborators else ExecutionMode.SOLO.value


@dataclass(frozen=True)
class Task:
    task_id: str
    title: str
    description: str
    leader_id: str
    collaborators: list[str] = field(default_factory=list)
    execution_mode: str = ExecutionMode.SOLO.value
    repo_url: str | None = None
    status: str = TaskState.QUEUED.value
    last_reason: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> 'Task':
        collaborators = row.get('collaborators') or []
        return cls(
            task_id=str(row.get('task_id') or ''),
            title=str(row.get('title') or ''),
            description=str(row.get('description') or ''),
            leader_id=str(row.get('leader_id') or ''),
            collaborators=[str(item) for item in collaborators if str(item).strip()],
            execution_mode=str(row.get('execution_mode') or ExecutionMode.SOLO.value),
            repo_url=(str(row.get('repo_url') or '').strip() or None),
            status=str(row.get('status') or TaskState.QUEUED.value),
            last_reason=row.get('last_reason'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )

    @property
    def roster(self) -> list[str]:
        members = [self.leader_id] if self.leader_id else []
        for member in self.collaborators:
            if member and member not in members:
                members.append(member)
        return members


__all__ = ['ExecutionMode', 'Task', 'TaskState', 'normalize_execution_mode']
