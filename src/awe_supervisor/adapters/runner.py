from __future__ import annotations

from dataclasses import replace
from queue import Empty, Queue
import os
from pathlib import Path
import shutil
import signal
import subprocess
import time
from threading import Thread

from awe_supervisor.adapters.base import (
    AgentCommand,
    ProcessRunError,
    ProcessTimeoutError,
    RunOutcome,
    RunState,
)
from awe_supervisor.domain.events import EventType
from awe_supervisor.domain.evidence import evidence_marker
from awe_supervisor.observability import get_logger
from awe_supervisor.storage.artifacts import TaskStateStore

_log = get_logger('awe_supervisor.adapters.runner')

_QUEUE_WAIT_SECONDS = 0.1
_REAP_TIMEOUT_SECONDS = 5.0


class ProcessRunner:
    """Runs the agent executable for one task while watching the pause signal.

    Output is streamed line by line into the task's ``run.log``. The pause
    signal is polled every ``pause_poll_seconds``; a pending pause or an
    elapsed timeout terminates the whole process group, SIGTERM first and
    SIGKILL after ``kill_grace_seconds``. The deadline also covers
    descendants that keep the output pipes open after the agent itself has
    exited; those are killed with the group once the grace window passes.
    """

    def __init__(
        self,
        *,
        store: TaskStateStore,
        command: AgentCommand,
        capability_config: Path | None = None,
        pause_poll_seconds: float = 2.0,
        kill_grace_seconds: float = 10.0,
        default_timeout_seconds: float = 7200,
        dry_run: bool = False,
        cwd: Path | None = None,
    ):
        self.store = store
        self.command = command
        self.capability_config = Path(capability_config) if capability_config else None
        self.pause_poll_seconds = max(0.01, float(pause_poll_seconds))
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))
        self.default_timeout_seconds = max(0.05, float(default_timeout_seconds))
        self.dry_run = dry_run
        self.cwd = Path(cwd) if cwd else None

    def run(
        self,
        task_id: str,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        use_capability: bool = True,
    ) -> RunOutcome:
        if self.dry_run:
            return self._simulate(task_id)

        timeout = float(timeout_seconds) if timeout_seconds else self.default_timeout_seconds
        capability = self.capability_config if use_capability else None
        before = evidence_marker(self.store.read_progress(task_id))
        outcome = self._run_once(task_id, prompt, timeout_seconds=timeout, capability=capability)

        if not self._is_silent_capability_exit(outcome, capability=capability):
            return outcome
        after = evidence_marker(self.store.read_progress(task_id))
        if after != before:
            return outcome

        _log.warning(
            'silent exit with capability attached; retrying without it task_id=%s capability=%s',
            task_id,
            capability,
        )
        self.store.append_event(task_id, EventType.CAPABILITY_RETRY, {'capability_config': str(capability)})
        self.store.append_log(task_id, 'supervisor', 'silent exit with capability config; retrying without it')
        retry = self._run_once(task_id, prompt, timeout_seconds=timeout, capability=None)
        return replace(retry, capability_retried=True)

    @staticmethod
    def _is_silent_capability_exit(outcome: RunOutcome, *, capability: Path | None) -> bool:
        return (
            capability is not None
            and outcome.state == RunState.DONE.value
            and outcome.returncode == 0
            and outcome.output_chars == 0
        )

    def _simulate(self, task_id: str) -> RunOutcome:
        self.store.append_log(task_id, 'supervisor', 'dry-run: agent process not spawned')
        self.store.update_progress(
            task_id,
            summary='Dry run finished without spawning the agent process.',
            percent_complete=100,
            checkpoint='dry-run: simulated agent work recorded',
        )
        self.store.append_event(task_id, EventType.RUN_FINISHED, {'dry_run': True, 'returncode': 0})
        return RunOutcome(state=RunState.DONE.value, returncode=0, duration_seconds=0.0)

    def _run_once(
        self,
        task_id: str,
        prompt: str,
        *,
        timeout_seconds: float,
        capability: Path | None,
    ) -> RunOutcome:
        argv = self._resolve_executable(self.command.build_argv(capability_config=capability))
        runtime_argv, runtime_input = self.command.prepare_invocation(argv=argv, prompt=prompt)
        task_dir = self.store.task_dir(task_id)
        cwd = self.cwd or task_dir

        self.store.append_event(
            task_id,
            EventType.RUN_STARTED,
            {'command': argv[0], 'capability': bool(capability), 'timeout_seconds': timeout_seconds},
        )
        self.store.append_log(task_id, 'supervisor', f'run started capability={bool(capability)}')
        _log.info('run started task_id=%s command=%s capability=%s', task_id, argv[0], bool(capability))

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                runtime_argv,
                stdin=subprocess.PIPE if runtime_input else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(cwd),
                bufsize=1,
                env=self._build_subprocess_env(task_id, task_dir),
                start_new_session=(os.name == 'posix'),
            )
        except FileNotFoundError as exc:
            self.store.append_event(task_id, EventType.RUN_FAILED, {'reason': 'command_not_found'})
            raise ProcessRunError(f'command_not_found command={argv[0]}') from exc
        except OSError as exc:
            self.store.append_event(task_id, EventType.RUN_FAILED, {'reason': 'command_not_executable'})
            raise ProcessRunError(f'command_not_executable command={argv[0]} error={exc}') from exc

        queue: Queue[tuple[str, str]] = Queue()
        workers = [
            Thread(target=self._feed_stdin, args=(process.stdin, runtime_input), daemon=True),
            Thread(target=self._pump, args=(process.stdout, 'stdout', queue), daemon=True),
            Thread(target=self._pump, args=(process.stderr, 'stderr', queue), daemon=True),
        ]
        for worker in workers:
            worker.start()

        output_chars = 0
        deadline = started + timeout_seconds
        next_pause_check = started + self.pause_poll_seconds
        exited_at: float | None = None
        while True:
            output_chars += self._drain_queue(task_id, queue, wait=_QUEUE_WAIT_SECONDS)
            now = time.monotonic()
            alive = process.poll() is None
            if not alive and exited_at is None:
                exited_at = now

            if alive and now >= next_pause_check:
                next_pause_check = now + self.pause_poll_seconds
                pause = self.store.consume_pause(task_id)
                if pause is not None:
                    _log.info('pause signal observed task_id=%s pid=%s', task_id, process.pid)
                    self._terminate(process)
                    output_chars += self._finish_streams(task_id, queue, workers)
                    self.store.append_log(task_id, 'supervisor', f'paused: {pause.message or "operator request"}')
                    self.store.append_event(task_id, EventType.RUN_PAUSED, {'message': pause.message})
                    return RunOutcome(
                        state=RunState.PAUSED.value,
                        returncode=process.returncode,
                        duration_seconds=time.monotonic() - started,
                        output_chars=output_chars,
                        pause_message=pause.message,
                    )

            if now >= deadline:
                _log.warning(
                    'run timed out task_id=%s timeout_seconds=%s agent_exited=%s',
                    task_id,
                    timeout_seconds,
                    not alive,
                )
                self._terminate(process)
                self._finish_streams(task_id, queue, workers)
                self.store.append_event(task_id, EventType.RUN_TIMED_OUT, {'timeout_seconds': timeout_seconds})
                raise ProcessTimeoutError(
                    f'command_timeout timeout_seconds={timeout_seconds}',
                    timeout_seconds=timeout_seconds,
                )

            if alive:
                continue
            if queue.empty() and all(not worker.is_alive() for worker in workers[1:]):
                break
            if now - exited_at >= self.kill_grace_seconds:
                # descendants of the agent still hold its stdout/stderr open
                _log.warning('agent exited with descendants still running; killing group task_id=%s', task_id)
                self._terminate(process)
                break

        output_chars += self._finish_streams(task_id, queue, workers)
        returncode = int(process.returncode or 0)
        elapsed = time.monotonic() - started
        if returncode != 0:
            self.store.append_event(task_id, EventType.RUN_FAILED, {'returncode': returncode})
            self.store.append_log(task_id, 'supervisor', f'run failed returncode={returncode}')
            raise ProcessRunError(f'command_failed returncode={returncode}', returncode=returncode)

        self.store.append_event(
            task_id,
            EventType.RUN_FINISHED,
            {'returncode': returncode, 'output_chars': output_chars, 'duration_seconds': round(elapsed, 3)},
        )
        self.store.append_log(task_id, 'supervisor', 'run finished')
        return RunOutcome(
            state=RunState.DONE.value,
            returncode=returncode,
            duration_seconds=elapsed,
            output_chars=output_chars,
        )

    def _drain_queue(self, task_id: str, queue: Queue[tuple[str, str]], *, wait: float) -> int:
        count = 0
        try:
            stream_name, chunk = queue.get(timeout=wait)
        except Empty:
            return 0
        while True:
            self.store.append_log(task_id, stream_name, chunk)
            count += len(chunk.strip())
            try:
                stream_name, chunk = queue.get_nowait()
            except Empty:
                return count

    def _finish_streams(self, task_id: str, queue: Queue[tuple[str, str]], workers: list[Thread]) -> int:
        deadline = time.monotonic() + max(0.5, self.kill_grace_seconds)
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
        count = 0
        while True:
            try:
                stream_name, chunk = queue.get_nowait()
            except Empty:
                return count
            self.store.append_log(task_id, stream_name, chunk)
            count += len(chunk.strip())

    def _terminate(self, process: subprocess.Popen) -> None:
        """Stop the agent and everything left in its process group."""
        kill = getattr(signal, 'SIGKILL', signal.SIGTERM)
        if process.poll() is not None:
            self._signal(process, kill)
            return
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            _log.warning('process ignored SIGTERM; killing pid=%s', process.pid)
        self._signal(process, kill)
        try:
            process.wait(timeout=_REAP_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            _log.error('process did not exit after kill pid=%s', process.pid)

    @staticmethod
    def _signal(process: subprocess.Popen, sig: int) -> None:
        if os.name == 'posix':
            # the agent leads its own session, so its pid is the group id
            try:
                os.killpg(process.pid, sig)
                return
            except (ProcessLookupError, PermissionError):
                return
            except OSError:
                pass
        if process.poll() is not None:
            return
        try:
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            return

    @staticmethod
    def _feed_stdin(pipe, text: str) -> None:
        if pipe is None:
            return
        try:
            if text:
                pipe.write(text)
        except (BrokenPipeError, OSError):
            _log.debug('agent closed stdin before the prompt was written')
        finally:
            try:
                pipe.close()
            except (BrokenPipeError, OSError):
                pass

    @staticmethod
    def _pump(pipe, stream_name: str, queue: Queue[tuple[str, str]]) -> None:
        if pipe is None:
            return
        try:
            while True:
                chunk = pipe.readline()
                if chunk == '':
                    break
                queue.put((stream_name, chunk))
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        first = str(argv[0]).strip()
        if not first:
            return argv
        resolved = shutil.which(first)
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched

    def _build_subprocess_env(self, task_id: str, task_dir: Path) -> dict[str, str]:
        paths = self.store.paths(task_id)
        env = dict(os.environ)
        env['AWE_TASK_ID'] = str(task_id)
        env['AWE_TASK_DIR'] = str(task_dir)
        env['AWE_PROGRESS_FILE'] = str(paths.progress_json)
        env['AWE_INBOX_FILE'] = str(paths.inbox_json)
        return env


__all__ = ['ProcessRunner']
