from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from awe_supervisor.alignment import fail_task
from awe_supervisor.domain.events import EventType
from awe_supervisor.domain.evidence import has_work_evidence, meaningful_checkpoint_count
from awe_supervisor.domain.progress import ProgressRecord, ProgressStatus
from awe_supervisor.observability import get_logger
from awe_supervisor.storage.artifacts import TaskStateStore

_log = get_logger('awe_supervisor.validator')

Remediation = Callable[[ProgressRecord, int], None]


class ValidationVerdict(str, Enum):
    ACCEPTED = 'accepted'
    REMEDIATED = 'remediated'
    FAILED = 'failed'


@dataclass(frozen=True)
class ValidationResult:
    verdict: str
    status: str
    reason: str
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.verdict != ValidationVerdict.FAILED.value


class CompletionValidator:
    def __init__(self, *, store: TaskStateStore, max_attempts: int = 1):
        self.store = store
        self.max_attempts = max(0, int(max_attempts))

    def validate(
        self,
        task_id: str,
        progress: ProgressRecord | None,
        *,
        remediate: Remediation | None = None,
    ) -> ValidationResult:
        """Settle the final record as ``completed`` or ``failed``.

        ``remediate`` re-runs the agent with a remediation prompt; it receives
        the current record and the 1-based attempt number and must leave the
        outcome in the progress file.
        """
        if progress is None:
            return self._finish(task_id, self._fail(task_id, 'Progress record missing at process exit', attempts=0))

        attempts = 0
        current = progress
        while True:
            status = current.status
            if status == ProgressStatus.FAILED.value:
                reason = current.summary or 'Agent reported failure'
                return self._finish(task_id, ValidationResult(ValidationVerdict.FAILED.value, status, reason, attempts))
            if status == ProgressStatus.BLOCKED.value:
                return self._finish(
                    task_id,
                    self._fail(task_id, f'Blocked: {current.summary or "no reason given"}', attempts=attempts),
                )
            if current.is_waiting:
                return self._finish(
                    task_id,
                    self._fail(
                        task_id,
                        f'Still waiting for operator at exit: {current.question or "no question recorded"}',
                        attempts=attempts,
                    ),
                )
            if has_work_evidence(current):
                return self._finish(task_id, self._accept(task_id, current, attempts=attempts))

            if remediate is None or attempts >= self.max_attempts:
                return self._finish(
                    task_id,
                    self._fail(
                        task_id,
                        f'No evidence of work after {attempts} remediation attempt(s)',
                        attempts=attempts,
                    ),
                )

            attempts += 1
            _log.warning('no evidence of work; remediating task_id=%s attempt=%s', task_id, attempts)
            self.store.append_event(task_id, EventType.REMEDIATION_STARTED, {'attempt': attempts, 'status': status})
            remediate(current, attempts)
            latest = self.store.read_progress(task_id)
            if latest is None:
                return self._finish(
                    task_id,
                    self._fail(task_id, 'Progress record missing after remediation', attempts=attempts),
                )
            current = latest

    def _accept(self, task_id: str, progress: ProgressRecord, *, attempts: int) -> ValidationResult:
        count = meaningful_checkpoint_count(progress)
        note = f'Auto-validation: accepted with {count} work checkpoint(s)'
        self.store.update_progress(
            task_id,
            status=ProgressStatus.COMPLETED,
            percent_complete=100,
            question=None,
            checkpoint=note,
        )
        verdict = ValidationVerdict.REMEDIATED if attempts else ValidationVerdict.ACCEPTED
        return ValidationResult(verdict.value, ProgressStatus.COMPLETED.value, note, attempts)

    def _fail(self, task_id: str, reason: str, *, attempts: int) -> ValidationResult:
        fail_task(self.store, task_id, reason)
        return ValidationResult(ValidationVerdict.FAILED.value, ProgressStatus.FAILED.value, reason, attempts)

    def _finish(self, task_id: str, result: ValidationResult) -> ValidationResult:
        self.store.append_event(
            task_id,
            EventType.VALIDATION_FINISHED,
            {'verdict': result.verdict, 'status': result.status, 'reason': result.reason, 'attempts': result.attempts},
        )
        _log.info('validation finished task_id=%s verdict=%s attempts=%s', task_id, result.verdict, result.attempts)
        return result


__all__ = ['CompletionValidator', 'Remediation', 'ValidationResult', 'ValidationVerdict', 'has_work_evidence']
