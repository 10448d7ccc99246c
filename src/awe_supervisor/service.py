from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from awe_supervisor.adapters.base import AgentCommand
from awe_supervisor.adapters.runner import ProcessRunner
from awe_supervisor.alignment import AlignmentLoop, fail_task
from awe_supervisor.automation import SupervisorLockError, pid_exists, read_lock_owner
from awe_supervisor.config import Settings
from awe_supervisor.domain.events import EventType
from awe_supervisor.domain.progress import ProgressRecord
from awe_supervisor.domain.task import Task, TaskState, normalize_execution_mode
from awe_supervisor.hosting import build_resolver
from awe_supervisor.observability import get_logger
from awe_supervisor.prompting import PromptBuilder
from awe_supervisor.repository import InMemoryTaskRepository, TaskCreateRecord, TaskRepository
from awe_supervisor.storage.artifacts import TaskStateStore
from awe_supervisor.supervisor import SupervisionResult, TaskSupervisor
from awe_supervisor.validator import CompletionValidator

_log = get_logger('awe_supervisor.service')

_MAX_TITLE_CHARS = 200
_MAX_MESSAGE_CHARS = 8000
_ACTIVE_STATES = frozenset({TaskState.RUNNING.value, TaskState.WAITING_FOR_HUMAN.value})


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


@dataclass(frozen=True)
class CreateTaskInput:
    title: str
    description: str
    leader_id: str
    collaborators: list[str] = field(default_factory=list)
    execution_mode: str | None = None


@dataclass(frozen=True)
class TaskView:
    task_id: str
    title: str
    description: str
    leader_id: str
    collaborators: list[str]
    execution_mode: str
    repo_url: str | None
    status: str
    last_reason: str | None
    created_at: str | None
    updated_at: str | None
    progress_status: str | None = None
    percent_complete: int | None = None
    question: str | None = None


class SupervisorService:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        store: TaskStateStore,
        supervisor: TaskSupervisor,
    ):
        self.repository = repository
        self.store = store
        self.supervisor = supervisor

    def create_task(self, payload: CreateTaskInput) -> TaskView:
        title = str(payload.title or '').strip()
        if not title:
            raise InputValidationError('title is required', field='title')
        if len(title) > _MAX_TITLE_CHARS:
            raise InputValidationError(f'title must be at most {_MAX_TITLE_CHARS} characters', field='title')
        leader_id = str(payload.leader_id or '').strip()
        if not leader_id:
            raise InputValidationError('leader_id is required', field='leader_id')

        collaborators: list[str] = []
        for item in payload.collaborators or []:
            member = str(item or '').strip()
            if member and member != leader_id and member not in collaborators:
                collaborators.append(member)
        try:
            execution_mode = normalize_execution_mode(payload.execution_mode, collaborators=collaborators)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='execution_mode') from exc

        row = self.repository.create_task_record(
            TaskCreateRecord(
                title=title,
                description=str(payload.description or '').strip(),
                leader_id=leader_id,
                collaborators=collaborators,
                execution_mode=execution_mode,
            )
        )
        _log.info('task created task_id=%s mode=%s', row['task_id'], execution_mode)
        return self._to_view(row)

    def list_tasks(self, *, limit: int = 100) -> list[TaskView]:
        return [self._to_view(row) for row in self.repository.list_tasks(limit=limit)]

    def get_task(self, task_id: str) -> TaskView | None:
        row = self.repository.get_task(task_id)
        if row is None:
            return None
        return self._to_view(row)

    def get_progress(self, task_id: str) -> ProgressRecord | None:
        self._require_task(task_id)
        return self.store.read_progress(task_id)

    def post_message(self, task_id: str, message: str) -> int:
        self._require_task(task_id)
        text = str(message or '').strip()
        if not text:
            raise InputValidationError('message is required', field='message')
        if len(text) > _MAX_MESSAGE_CHARS:
            raise InputValidationError(f'message must be at most {_MAX_MESSAGE_CHARS} characters', field='message')
        pending = self.store.append_inbox(task_id, text)
        self.store.append_event(task_id, EventType.MESSAGE_RECEIVED, {'chars': len(text), 'pending': len(pending)})
        return len(pending)

    def request_pause(self, task_id: str, message: str | None = None) -> str | None:
        self._require_task(task_id)
        request = self.store.request_pause(task_id, message)
        self.store.append_event(task_id, EventType.PAUSE_REQUESTED, {'message': request.message})
        _log.info('pause requested task_id=%s', task_id)
        return request.requested_at

    def list_events(self, task_id: str, *, limit: int | None = None) -> list[dict]:
        self._require_task(task_id)
        return self.store.list_events(task_id, limit=limit)

    def start_task(self, task_id: str) -> TaskView:
        row = self._require_task(task_id)
        if row['status'] in _ACTIVE_STATES and self._lock_is_held(task_id):
            return self._to_view(row)
        try:
            result = self.supervisor.supervise(task_id)
        except SupervisorLockError as exc:
            _log.info('start deduped task_id=%s owner_pid=%s', task_id, exc.owner_pid)
            return self._to_view(self._require_task(task_id))
        self._log_result(result)
        return self._to_view(self._require_task(task_id))

    def mark_failed(self, task_id: str, *, reason: str) -> TaskView:
        """Record a crash outside the supervisor's own failure handling."""
        _log.warning('mark_failed task_id=%s reason=%s', task_id, reason)
        self._require_task(task_id)
        progress = self.store.read_progress(task_id)
        if progress is None or not progress.is_terminal:
            fail_task(self.store, task_id, reason)
        row = self.repository.update_task_status(task_id, status=TaskState.FAILED.value, reason=reason)
        return self._to_view(row)

    def _lock_is_held(self, task_id: str) -> bool:
        owner = read_lock_owner(self.store.lock_path(task_id))
        return owner is not None and pid_exists(owner['pid'])

    @staticmethod
    def _log_result(result: SupervisionResult) -> None:
        _log.info(
            'start finished task_id=%s status=%s verdict=%s skipped=%s',
            result.task_id,
            result.status,
            result.verdict,
            result.skipped,
        )

    def _require_task(self, task_id: str) -> dict:
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def _to_view(self, row: dict) -> TaskView:
        task = Task.from_row(row)
        progress = self.store.read_progress(task.task_id)
        return TaskView(
            task_id=task.task_id,
            title=task.title,
            description=task.description,
            leader_id=task.leader_id,
            collaborators=list(task.collaborators),
            execution_mode=task.execution_mode,
            repo_url=task.repo_url,
            status=task.status,
            last_reason=task.last_reason,
            created_at=task.created_at,
            updated_at=task.updated_at,
            progress_status=(progress.status if progress else None),
            percent_complete=(progress.percent_complete if progress else None),
            question=(progress.question if progress and progress.is_waiting else None),
        )


def build_service(
    settings: Settings,
    *,
    repository: TaskRepository | None = None,
    hosting_transport: httpx.BaseTransport | None = None,
) -> SupervisorService:
    store = TaskStateStore(settings.state_root)
    runner = ProcessRunner(
        store=store,
        command=AgentCommand(command=settings.agent_command, capability_flag=settings.capability_flag),
        capability_config=settings.capability_config,
        pause_poll_seconds=settings.pause_poll_seconds,
        kill_grace_seconds=settings.kill_grace_seconds,
        default_timeout_seconds=settings.run_timeout_seconds,
        dry_run=settings.dry_run,
    )
    prompts = PromptBuilder(store=store)
    alignment = AlignmentLoop(
        store=store,
        runner=runner,
        prompts=prompts,
        max_rounds=settings.alignment_max_rounds,
        wait_seconds=settings.alignment_wait_seconds,
        run_timeout_seconds=settings.alignment_run_timeout_seconds,
        poll_seconds=settings.inbox_poll_seconds,
    )
    repo = repository or InMemoryTaskRepository()
    supervisor = TaskSupervisor(
        repository=repo,
        store=store,
        runner=runner,
        prompts=prompts,
        alignment=alignment,
        validator=CompletionValidator(store=store, max_attempts=settings.remediation_attempts),
        resolver_factory=lambda: build_resolver(settings, transport=hosting_transport),
        run_timeout_seconds=settings.run_timeout_seconds,
    )
    return SupervisorService(repository=repo, store=store, supervisor=supervisor)


__all__ = ['CreateTaskInput', 'InputValidationError', 'SupervisorService', 'TaskView', 'build_service']
