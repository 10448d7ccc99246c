from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from awe_supervisor.adapters.base import ProcessRunError, RunOutcome
from awe_supervisor.adapters.runner import ProcessRunner
from awe_supervisor.domain.events import EventType
from awe_supervisor.domain.progress import ProgressRecord, ProgressStatus
from awe_supervisor.domain.task import Task
from awe_supervisor.observability import get_logger, task_context, trace_span
from awe_supervisor.prompting import PromptBuilder
from awe_supervisor.storage.artifacts import PauseRequest, TaskStateStore

_log = get_logger('awe_supervisor.alignment')

WAITING_SUMMARY = 'Waiting for operator'


@dataclass(frozen=True)
class AlignmentExchange:
    question: str
    answer: str


def mark_waiting_after_pause(
    store: TaskStateStore,
    task_id: str,
    pause: PauseRequest | None,
) -> ProgressRecord:
    """Turn an intercepted pause into a ``waiting_for_human`` record.

    Only called once the agent process has exited, so the supervisor is the
    sole writer at this point. A record the agent already settled as
    ``completed`` or ``failed`` is returned untouched.
    """
    current = store.read_progress(task_id)
    if current is not None and current.is_terminal:
        _log.info('pause arrived after the agent settled task_id=%s status=%s', task_id, current.status)
        return current
    reason = (pause.message if pause else None) or ''
    if reason:
        question = (
            f'Work was paused by the operator ("{reason}"). '
            'Reply with guidance, or confirm explicitly that work should continue.'
        )
    else:
        question = 'Work was paused by the operator. Reply with guidance, or confirm explicitly that work should continue.'
    record = store.update_progress(
        task_id,
        status=ProgressStatus.WAITING_FOR_HUMAN,
        summary=WAITING_SUMMARY,
        question=question,
        checkpoint=f'Paused by operator: {reason}' if reason else 'Paused by operator',
    )
    _log.info('task marked waiting after pause task_id=%s', task_id)
    return record


def fail_task(store: TaskStateStore, task_id: str, reason: str) -> ProgressRecord:
    text = str(reason or '').strip() or 'failed'
    return store.update_progress(
        task_id,
        status=ProgressStatus.FAILED,
        summary=text,
        question=None,
        checkpoint=f'supervisor: {text}',
    )


class AlignmentLoop:
    """Bounded operator conversation for a task reporting ``waiting_for_human``.

    Each round blocks on the inbox, then resumes the agent with the whole
    conversation so far. The loop ends when the agent leaves
    ``waiting_for_human``, when the operator stays silent past
    ``wait_seconds``, or after ``max_rounds`` rounds.
    """

    def __init__(
        self,
        *,
        store: TaskStateStore,
        runner: ProcessRunner,
        prompts: PromptBuilder,
        max_rounds: int = 5,
        wait_seconds: float = 1800,
        run_timeout_seconds: float = 1800,
        poll_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.runner = runner
        self.prompts = prompts
        self.max_rounds = max(1, int(max_rounds))
        self.wait_seconds = max(0.0, float(wait_seconds))
        self.run_timeout_seconds = float(run_timeout_seconds)
        self.poll_seconds = max(0.001, float(poll_seconds))
        self._sleep = sleep
        self._monotonic = monotonic

    def run(self, task: Task, progress: ProgressRecord, *, repo_url: str | None = None) -> str:
        task_id = task.task_id
        if not progress.is_waiting:
            return progress.status

        stale = self.store.drain_inbox(task_id)
        self.store.append_event(
            task_id,
            EventType.ALIGNMENT_STARTED,
            {'question': progress.question, 'stale_messages': len(stale)},
        )
        _log.info('alignment started task_id=%s stale_messages=%s', task_id, len(stale))

        history: list[AlignmentExchange] = []
        current = progress
        rounds = 0
        while current.is_waiting:
            question = current.question or '(no question recorded)'
            if rounds >= self.max_rounds:
                reason = (
                    f'Alignment ended after {self.max_rounds} rounds without operator confirmation. '
                    f'Last question: {question}'
                )
                _log.warning('alignment round cap reached task_id=%s rounds=%s', task_id, rounds)
                fail_task(self.store, task_id, reason)
                self.store.append_event(task_id, EventType.ALIGNMENT_FINISHED, {'status': 'failed', 'rounds': rounds})
                return ProgressStatus.FAILED.value

            rounds += 1
            span = trace_span('alignment.round', task_id=task_id, round=rounds)
            with task_context(task_id, round_no=rounds, phase='alignment'), span:
                messages = self._wait_for_answer(task_id)
                if messages is None:
                    reason = (
                        f'No operator reply within {self.wait_seconds:g} seconds. '
                        f'Unanswered question: {question}'
                    )
                    _log.warning('alignment wait timed out task_id=%s', task_id)
                    fail_task(self.store, task_id, reason)
                    self.store.append_event(task_id, EventType.ALIGNMENT_TIMEOUT, {'round': rounds, 'question': question})
                    return ProgressStatus.FAILED.value

                history.append(AlignmentExchange(question=question, answer='\n'.join(messages)))
                self.store.append_event(
                    task_id,
                    EventType.ALIGNMENT_ROUND,
                    {'round': rounds, 'question': question, 'messages': len(messages)},
                )
                prompt = self.prompts.alignment_resume(
                    task,
                    history,
                    repo_url=repo_url,
                    round_no=rounds,
                    max_rounds=self.max_rounds,
                )
                outcome = self._resume(task_id, prompt)
                if outcome is None:
                    return ProgressStatus.FAILED.value
                if outcome.paused:
                    current = mark_waiting_after_pause(
                        self.store,
                        task_id,
                        PauseRequest(message=outcome.pause_message),
                    )
                    continue

                latest = self.store.read_progress(task_id)
                if latest is None:
                    fail_task(self.store, task_id, 'Progress record missing after alignment resume')
                    return ProgressStatus.FAILED.value
                current = latest

        self.store.append_event(task_id, EventType.ALIGNMENT_FINISHED, {'status': current.status, 'rounds': rounds})
        _log.info('alignment finished task_id=%s status=%s rounds=%s', task_id, current.status, rounds)
        return current.status

    def _wait_for_answer(self, task_id: str) -> list[str] | None:
        deadline = self._monotonic() + self.wait_seconds
        while True:
            messages = self.store.drain_inbox(task_id)
            if messages:
                return messages
            # a pause while nobody is running would only kill the next resume
            if self.store.consume_pause(task_id) is not None:
                _log.info('ignoring pause signal while waiting for operator task_id=%s', task_id)
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return None
            self._sleep(min(self.poll_seconds, remaining))

    def _resume(self, task_id: str, prompt: str) -> RunOutcome | None:
        try:
            return self.runner.run(task_id, prompt, timeout_seconds=self.run_timeout_seconds)
        except ProcessRunError as exc:
            _log.warning('alignment resume failed; retrying without capability task_id=%s error=%s', task_id, exc)
            self.store.append_event(task_id, EventType.CAPABILITY_RETRY, {'phase': 'alignment', 'error': str(exc)})
        try:
            return self.runner.run(
                task_id,
                prompt,
                timeout_seconds=self.run_timeout_seconds,
                use_capability=False,
            )
        except ProcessRunError as exc:
            _log.error('alignment resume failed again task_id=%s error=%s', task_id, exc, exc_info=True)
            fail_task(self.store, task_id, f'Alignment resume failed: {exc}')
            return None


__all__ = ['AlignmentExchange', 'AlignmentLoop', 'WAITING_SUMMARY', 'fail_task', 'mark_waiting_after_pause']
