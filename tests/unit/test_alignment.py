from __future__ import annotations

from pathlib import Path

from awe_supervisor.adapters.base import ProcessRunError, RunOutcome
from awe_supervisor.alignment import AlignmentLoop, fail_task, mark_waiting_after_pause
from awe_supervisor.domain.progress import ProgressStatus
from awe_supervisor.domain.task import Task
from awe_supervisor.prompting import PromptBuilder
from awe_supervisor.storage.artifacts import PauseRequest, TaskStateStore

TASK = Task(task_id='task-align', title='Write release notes', description='', leader_id='alice')


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep = None

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


class ScriptedRunner:
    """Each call pops the next step; a step writes progress and returns an outcome or raises."""

    def __init__(self, store: TaskStateStore, steps):
        self.store = store
        self.steps = list(steps)
        self.calls: list[dict] = []

    def run(self, task_id, prompt, *, timeout_seconds=None, use_capability=True):
        self.calls.append({'prompt': prompt, 'timeout_seconds': timeout_seconds, 'use_capability': use_capability})
        step = self.steps.pop(0)
        result = step(self.store, task_id)
        if result is None:
            return RunOutcome(state='done', returncode=0, duration_seconds=0.1, output_chars=10)
        return result


def _write_waiting(question):
    def step(store, task_id):
        store.update_progress(task_id, status='waiting_for_human', question=question)
    return step


def _write_in_progress(checkpoint):
    def step(store, task_id):
        store.update_progress(task_id, status='in-progress', question=None, checkpoint=checkpoint, percent_complete=30)
    return step


def _raise(message):
    def step(store, task_id):
        raise ProcessRunError(message, returncode=1)
    return step


def _paused(message):
    def step(store, task_id):
        return RunOutcome(state='paused', returncode=-15, duration_seconds=0.1, pause_message=message)
    return step


def _setup(tmp_path: Path, steps, **kwargs):
    store = TaskStateStore(tmp_path)
    runner = ScriptedRunner(store, steps)
    clock = FakeClock()
    loop = AlignmentLoop(
        store=store,
        runner=runner,
        prompts=PromptBuilder(store=store),
        sleep=clock.sleep,
        monotonic=clock.monotonic,
        **kwargs,
    )
    return store, runner, clock, loop


def _events(store, task_id='task-align'):
    return [item['type'] for item in store.list_events(task_id)]


def test_operator_answer_resumes_with_history_and_exits_on_in_progress(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_write_in_progress('Tone agreed: formal')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'formal')

    status = loop.run(TASK, progress)

    assert status == 'in-progress'
    assert len(runner.calls) == 1
    prompt = runner.calls[0]['prompt']
    assert '1. You asked: Which tone?' in prompt
    assert '   formal' in prompt
    assert runner.calls[0]['timeout_seconds'] == loop.run_timeout_seconds
    assert _events(store) == ['alignment_started', 'alignment_round', 'alignment_finished']


def test_stale_messages_are_drained_before_waiting(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_write_in_progress('Go')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Proceed?')
    store.append_inbox(TASK.task_id, 'old message from before the question')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'yes, proceed')

    loop.run(TASK, progress)

    prompt = runner.calls[0]['prompt']
    assert 'yes, proceed' in prompt
    assert 'old message' not in prompt


def test_history_accumulates_across_rounds(tmp_path: Path):
    answers = iter(['formal', 'one page'])
    store, runner, clock, loop = _setup(
        tmp_path,
        [_write_waiting('How long?'), _write_in_progress('Scope agreed')],
    )
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, next(answers))

    status = loop.run(TASK, progress)

    assert status == 'in-progress'
    second = runner.calls[1]['prompt']
    assert 'You asked: Which tone?' in second
    assert 'You asked: How long?' in second
    assert 'one page' in second


def test_round_cap_fails_task(tmp_path: Path):
    store, runner, clock, loop = _setup(
        tmp_path,
        [_write_waiting('Still unsure?'), _write_waiting('Really unsure?')],
        max_rounds=2,
    )
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'hmm')

    status = loop.run(TASK, progress)

    assert status == 'failed'
    assert len(runner.calls) == 2
    record = store.read_progress(TASK.task_id)
    assert record.status == ProgressStatus.FAILED.value
    assert 'after 2 rounds' in record.summary
    assert 'Really unsure?' in record.summary


def test_wait_timeout_fails_with_unanswered_question(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [], wait_seconds=10, poll_seconds=2)
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')

    status = loop.run(TASK, progress)

    assert status == 'failed'
    assert runner.calls == []
    assert sum(clock.sleeps) == 10
    record = store.read_progress(TASK.task_id)
    assert record.summary.startswith('No operator reply within 10 seconds')
    assert 'Unanswered question: Which tone?' in record.summary
    assert 'alignment_timeout' in _events(store)


def test_pause_while_waiting_is_consumed_and_ignored(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_write_in_progress('Go')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Proceed?')
    store.request_pause(TASK.task_id, 'stop')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'proceed')

    assert loop.run(TASK, progress) == 'in-progress'
    assert store.peek_pause(TASK.task_id) is None


def test_resume_failure_retries_without_capability_then_fails(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_raise('command_failed returncode=1'), _raise('again')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'formal')

    status = loop.run(TASK, progress)

    assert status == 'failed'
    assert [call['use_capability'] for call in runner.calls] == [True, False]
    assert store.read_progress(TASK.task_id).summary == 'Alignment resume failed: again'


def test_resume_failure_recovers_on_retry(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_raise('boom'), _write_in_progress('Go')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'formal')

    assert loop.run(TASK, progress) == 'in-progress'
    assert 'capability_retry' in _events(store)


def test_pause_during_resume_returns_to_waiting(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [_paused('hold on'), _write_in_progress('Go')])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'formal')

    assert loop.run(TASK, progress) == 'in-progress'
    assert len(runner.calls) == 2
    assert 'Work was paused by the operator ("hold on")' in runner.calls[1]['prompt']


def test_not_waiting_returns_immediately(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [])
    progress = store.update_progress(TASK.task_id, status='in-progress')
    assert loop.run(TASK, progress) == 'in-progress'
    assert _events(store) == []


def test_mark_waiting_after_pause_and_fail_task(tmp_path: Path):
    store = TaskStateStore(tmp_path)
    record = mark_waiting_after_pause(store, 't1', PauseRequest(message='lunch'))
    assert record.status == 'waiting_for_human'
    assert 'lunch' in record.question
    assert record.checkpoints[-1].description == 'Paused by operator: lunch'

    failed = fail_task(store, 't1', 'gave up')
    assert failed.status == 'failed'
    assert failed.question is None
    assert failed.checkpoints[-1].description == 'supervisor: gave up'


def test_mark_waiting_after_pause_keeps_settled_record(tmp_path: Path):
    store = TaskStateStore(tmp_path)
    store.update_progress('t1', status='completed', percent_complete=100, checkpoint='Published release notes')

    record = mark_waiting_after_pause(store, 't1', PauseRequest(message='check'))

    assert record.status == 'completed'
    assert record.question is None
    assert [item.description for item in record.checkpoints] == ['Published release notes']


def test_pause_after_agent_completed_during_resume_ends_alignment(tmp_path: Path):
    def complete_then_paused(store, task_id):
        store.update_progress(task_id, status='completed', question=None, checkpoint='Shipped release notes')
        return RunOutcome(state='paused', returncode=-15, duration_seconds=0.1, pause_message='check')

    store, runner, clock, loop = _setup(tmp_path, [complete_then_paused])
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')
    clock.on_sleep = lambda: store.append_inbox(TASK.task_id, 'formal')

    assert loop.run(TASK, progress) == 'completed'
    assert len(runner.calls) == 1
    assert store.read_progress(TASK.task_id).status == 'completed'
    assert _events(store)[-1] == 'alignment_finished'


def test_wait_timeout_reports_fractional_seconds(tmp_path: Path):
    store, runner, clock, loop = _setup(tmp_path, [], wait_seconds=0.5, poll_seconds=0.1)
    progress = store.update_progress(TASK.task_id, status='waiting_for_human', question='Which tone?')

    assert loop.run(TASK, progress) == 'failed'
    assert store.read_progress(TASK.task_id).summary.startswith('No operator reply within 0.5 seconds')
