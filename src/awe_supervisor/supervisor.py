from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

from awe_supervisor.adapters.base import ProcessRunError, ProcessTimeoutError, RunOutcome
from awe_supervisor.adapters.runner import ProcessRunner
from awe_supervisor.alignment import AlignmentLoop, fail_task, mark_waiting_after_pause
from awe_supervisor.automation import acquire_single_instance
from awe_supervisor.domain.events import EventType
from awe_supervisor.domain.progress import ProgressRecord, ProgressStatus
from awe_supervisor.domain.task import Task, TaskState
from awe_supervisor.hosting import RepositoryResolver, ResolutionError
from awe_supervisor.observability import get_logger, task_context, trace_span
from awe_supervisor.prompting import PromptBuilder
from awe_supervisor.repository import TaskRepository
from awe_supervisor.storage.artifacts import PauseRequest, TaskStateStore
from awe_supervisor.validator import CompletionValidator

_log = get_logger('awe_supervisor.supervisor')

ResolverFactory = Callable[[], 'RepositoryResolver | None']


@dataclass(frozen=True)
class SupervisionResult:
    task_id: str
    status: str
    reason: str
    verdict: str | None = None
    repo_url: str | None = None
    attempts: int = 0
    skipped: bool = False


class TaskSupervisor:
    """resolve repository -> run -> align -> validate -> finalise, for one task at a time."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        store: TaskStateStore,
        runner: ProcessRunner,
        prompts: PromptBuilder,
        alignment: AlignmentLoop,
        validator: CompletionValidator,
        resolver_factory: ResolverFactory | None = None,
        run_timeout_seconds: float = 7200,
    ):
        self.repository = repository
        self.store = store
        self.runner = runner
        self.prompts = prompts
        self.alignment = alignment
        self.validator = validator
        self.resolver_factory = resolver_factory
        self.run_timeout_seconds = float(run_timeout_seconds)
        self._resolver: RepositoryResolver | None = None
        self._resolver_loaded = False

    def supervise(self, task_id: str) -> SupervisionResult:
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        task = Task.from_row(row)
        with task_context(task.task_id, phase='supervise'):
            with acquire_single_instance(self.store.lock_path(task.task_id), owner='supervisor'):
                try:
                    return self._supervise_locked(task)
                except Exception as exc:
                    self._record_crash(task, exc)
                    raise

    def _record_crash(self, task: Task, exc: Exception) -> None:
        reason = f'Supervisor error: {type(exc).__name__}: {exc}'
        _log.exception('supervision crashed task_id=%s', task.task_id)
        current = self.store.read_progress(task.task_id)
        if current is None or not current.is_terminal:
            fail_task(self.store, task.task_id, reason)
        self._set_task_status(task.task_id, TaskState.FAILED.value, reason)

    def _supervise_locked(self, task: Task) -> SupervisionResult:
        task_id = task.task_id
        existing = self.store.read_progress(task_id)
        if existing is not None and existing.is_terminal:
            _log.info('task already settled task_id=%s status=%s', task_id, existing.status)
            self.store.append_event(task_id, EventType.SUPERVISION_SKIPPED, {'status': existing.status})
            self._set_task_status(task_id, existing.status, existing.summary)
            return SupervisionResult(
                task_id=task_id,
                status=existing.status,
                reason=existing.summary,
                repo_url=task.repo_url or existing.repo_url,
                skipped=True,
            )

        try:
            repo_url = self._resolve_repository(task)
        except ResolutionError as exc:
            return self._abort(task, f'Repository resolution failed: {exc}')
        task = replace(task, repo_url=repo_url)
        self._set_task_status(task_id, TaskState.RUNNING.value, None)

        try:
            self._run_and_align(task, existing)
        except ProcessTimeoutError as exc:
            return self._abort(task, f'Agent run timed out after {exc.timeout_seconds:g} seconds')
        except ProcessRunError as exc:
            return self._abort(task, f'Agent run failed: {exc}')

        with task_context(phase='validation'), trace_span('supervisor.validate', task_id=task_id):
            result = self.validator.validate(
                task_id,
                self.store.read_progress(task_id),
                remediate=lambda progress, attempt: self._remediate(task, progress, attempt),
            )
        if repo_url:
            self.store.update_progress(task_id, repo_url=repo_url)
        self._set_task_status(task_id, result.status, result.reason)
        _log.info('supervision finished task_id=%s status=%s verdict=%s', task_id, result.status, result.verdict)
        return SupervisionResult(
            task_id=task_id,
            status=result.status,
            reason=result.reason,
            verdict=result.verdict,
            repo_url=repo_url,
            attempts=result.attempts,
        )

    def _run_and_align(self, task: Task, existing: ProgressRecord | None) -> None:
        if existing is not None and existing.is_waiting:
            _log.info('resuming alignment after restart task_id=%s', task.task_id)
            self._align(task, existing)
            return

        operator_messages = self.store.drain_inbox(task.task_id)
        if existing is None:
            prompt = self.prompts.briefing(task, repo_url=task.repo_url, operator_messages=operator_messages)
        else:
            prompt = self.prompts.resume(task, existing, repo_url=task.repo_url, operator_messages=operator_messages)
        span = trace_span('supervisor.run', task_id=task.task_id, resumed=existing is not None)
        with task_context(phase='run'), span:
            outcome = self.runner.run(task.task_id, prompt, timeout_seconds=self.run_timeout_seconds)
        self._after_run(task, outcome)

    def _after_run(self, task: Task, outcome: RunOutcome) -> None:
        if outcome.paused:
            progress = mark_waiting_after_pause(self.store, task.task_id, PauseRequest(message=outcome.pause_message))
        else:
            progress = self.store.read_progress(task.task_id)
        if progress is not None and progress.is_waiting:
            self._align(task, progress)

    def _align(self, task: Task, progress: ProgressRecord) -> str:
        self._set_task_status(task.task_id, TaskState.WAITING_FOR_HUMAN.value, progress.question)
        status = self.alignment.run(task, progress, repo_url=task.repo_url)
        if status not in {ProgressStatus.FAILED.value, ProgressStatus.WAITING_FOR_HUMAN.value}:
            self._set_task_status(task.task_id, TaskState.RUNNING.value, None)
        return status

    def _remediate(self, task: Task, progress: ProgressRecord, attempt: int) -> None:
        prompt = self.prompts.remediation(
            task,
            progress,
            attempt=attempt,
            max_attempts=self.validator.max_attempts,
        )
        span = trace_span('supervisor.remediate', task_id=task.task_id, attempt=attempt)
        with task_context(phase='remediation'), span:
            try:
                outcome = self.runner.run(task.task_id, prompt, timeout_seconds=self.run_timeout_seconds)
            except ProcessRunError as exc:
                _log.warning('remediation run failed task_id=%s attempt=%s error=%s', task.task_id, attempt, exc)
                fail_task(self.store, task.task_id, f'Remediation run failed: {exc}')
                return
            self._after_run(task, outcome)

    def _resolve_repository(self, task: Task) -> str | None:
        if task.repo_url:
            return task.repo_url
        try:
            resolver = self._get_resolver()
            if resolver is None:
                return None
            url = resolver.resolve(task.task_id, task.title)
        except ResolutionError as exc:
            self.store.append_event(task.task_id, EventType.REPOSITORY_FAILED, {'error': str(exc)})
            raise
        row = self.repository.set_repo_url(task.task_id, url)
        effective = str(row.get('repo_url') or url)
        self.store.append_event(task.task_id, EventType.REPOSITORY_RESOLVED, {'repo_url': effective})
        return effective

    def _get_resolver(self) -> RepositoryResolver | None:
        if not self._resolver_loaded:
            # configuration errors surface per task, before any process is spawned
            self._resolver = self.resolver_factory() if self.resolver_factory else None
            self._resolver_loaded = True
        return self._resolver

    def _abort(self, task: Task, reason: str) -> SupervisionResult:
        _log.error('supervision aborted task_id=%s reason=%s', task.task_id, reason, exc_info=True)
        fail_task(self.store, task.task_id, reason)
        self._set_task_status(task.task_id, TaskState.FAILED.value, reason)
        return SupervisionResult(
            task_id=task.task_id,
            status=ProgressStatus.FAILED.value,
            reason=reason,
            verdict='failed',
            repo_url=task.repo_url,
        )

    def _set_task_status(self, task_id: str, status: str, reason: str | None) -> None:
        try:
            self.repository.update_task_status(task_id, status=status, reason=reason)
        except KeyError:
            _log.warning('task row missing while updating status task_id=%s', task_id)


__all__ = ['SupervisionResult', 'TaskSupervisor']
