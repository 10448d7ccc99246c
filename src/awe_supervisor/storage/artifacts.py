from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import os
from pathlib import Path
from threading import RLock
from typing import Any

from awe_supervisor.domain.events import EventType, normalize_event_type
from awe_supervisor.domain.progress import ProgressRecord, ProgressStatus, clamp_percent
from awe_supervisor.observability import get_logger

_log = get_logger('awe_supervisor.storage.artifacts')

_UNSET: Any = object()


@dataclass(frozen=True)
class TaskPaths:
    root: Path
    progress_json: Path
    inbox_json: Path
    pause_json: Path
    run_log: Path
    events_jsonl: Path
    lock_file: Path


@dataclass(frozen=True)
class PauseRequest:
    message: str | None
    requested_at: str | None = None


class TaskStateStore:
    """Per-task JSON documents shared between the supervisor and the agent process.

    Every read goes to disk. Whole documents are written through a temp file and
    ``os.replace`` so a concurrent reader never sees a half-written file.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = RLock()

    def task_dir(self, task_id: str) -> Path:
        return self._paths(task_id).root

    def paths(self, task_id: str) -> TaskPaths:
        return self._paths(task_id)

    def lock_path(self, task_id: str) -> Path:
        return self._paths(task_id).lock_file

    # progress record

    def read_progress(self, task_id: str) -> ProgressRecord | None:
        paths = self._paths(task_id)
        payload = self._read_json(paths.progress_json)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            _log.warning('progress record is not an object task_id=%s', task_id)
            return None
        return ProgressRecord.from_dict(payload, task_id=task_id)

    def write_progress(self, task_id: str, record: ProgressRecord) -> ProgressRecord:
        paths = self._paths(task_id)
        if not record.task_id:
            record.task_id = str(task_id)
        record.reported_at = self._utc_now_iso()
        with self._lock:
            self._write_json(paths.progress_json, record.to_dict())
        return record

    def update_progress(
        self,
        task_id: str,
        *,
        status: str | ProgressStatus | None = None,
        summary: str | None = None,
        percent_complete: int | None = None,
        question: str | None = _UNSET,
        checkpoint: str | None = None,
        leader_id: str | None = None,
        repo_url: str | None = None,
    ) -> ProgressRecord:
        """Read-modify-write the progress record, creating it when absent.

        ``percent_complete`` never moves backwards; a lower value is ignored.
        """
        with self._lock:
            record = self.read_progress(task_id) or ProgressRecord(task_id=str(task_id))
            if status is not None:
                record.status = status.value if isinstance(status, ProgressStatus) else str(status)
            if summary is not None:
                record.summary = str(summary).strip()
            if percent_complete is not None:
                record.percent_complete = max(record.percent_complete, clamp_percent(percent_complete))
            if question is not _UNSET:
                record.question = str(question or '').strip() or None
            if leader_id and not record.leader_id:
                record.leader_id = str(leader_id)
            if repo_url and not record.repo_url:
                record.repo_url = str(repo_url)
            if checkpoint:
                record.add_checkpoint(checkpoint)
            return self.write_progress(task_id, record)

    def append_checkpoint(self, task_id: str, description: str) -> ProgressRecord:
        return self.update_progress(task_id, checkpoint=description)

    # inbox

    def read_inbox(self, task_id: str) -> list[str]:
        payload = self._read_json(self._paths(task_id).inbox_json)
        return self._inbox_messages(payload)

    def append_inbox(self, task_id: str, message: str) -> list[str]:
        text = str(message or '').strip()
        if not text:
            raise ValueError('message is required')
        paths = self._paths(task_id)
        with self._lock:
            messages = self._inbox_messages(self._read_json(paths.inbox_json))
            messages.append(text)
            self._write_json(paths.inbox_json, {'messages': messages, 'updatedAt': self._utc_now_iso()})
        return messages

    def drain_inbox(self, task_id: str) -> list[str]:
        """Return every pending message and clear the mailbox.

        Nothing is written when the mailbox is already empty.
        """
        paths = self._paths(task_id)
        with self._lock:
            messages = self._inbox_messages(self._read_json(paths.inbox_json))
            if not messages:
                return []
            self._write_json(paths.inbox_json, {'messages': [], 'updatedAt': self._utc_now_iso()})
        _log.info('inbox drained task_id=%s count=%s', task_id, len(messages))
        return messages

    # pause signal

    def request_pause(self, task_id: str, message: str | None = None) -> PauseRequest:
        paths = self._paths(task_id)
        request = PauseRequest(message=(str(message or '').strip() or None), requested_at=self._utc_now_iso())
        payload: dict = {'requestedAt': request.requested_at}
        if request.message:
            payload['message'] = request.message
        with self._lock:
            self._write_json(paths.pause_json, payload)
        return request

    def peek_pause(self, task_id: str) -> PauseRequest | None:
        paths = self._paths(task_id)
        if not paths.pause_json.exists():
            return None
        return self._pause_from_payload(self._read_json(paths.pause_json))

    def consume_pause(self, task_id: str) -> PauseRequest | None:
        """Read and delete the pause signal so a later pause is not swallowed."""
        paths = self._paths(task_id)
        with self._lock:
            if not paths.pause_json.exists():
                return None
            payload = self._read_json(paths.pause_json)
            try:
                paths.pause_json.unlink()
            except FileNotFoundError:
                return None
        return self._pause_from_payload(payload)

    # append-only logs

    def append_log(self, task_id: str, stream: str, text: str) -> None:
        paths = self._paths(task_id)
        stamp = self._utc_now_iso()
        name = str(stream or 'log').strip() or 'log'
        lines = [line for line in str(text or '').splitlines() if line.strip()]
        if not lines:
            return
        block = ''.join(f'[{stamp}] [{name}] {line}\n' for line in lines)
        with self._lock:
            with paths.run_log.open('a', encoding='utf-8') as f:
                f.write(block)

    def append_event(self, task_id: str, event_type: str | EventType, payload: dict | None = None) -> dict:
        paths = self._paths(task_id)
        event = {
            'ts': self._utc_now_iso(),
            'task_id': str(task_id),
            'type': normalize_event_type(event_type),
            'payload': dict(payload or {}),
        }
        line = json.dumps(event, ensure_ascii=True)
        with self._lock:
            with paths.events_jsonl.open('a', encoding='utf-8') as f:
                f.write(line + '\n')
        return event

    def list_events(self, task_id: str, *, limit: int | None = None) -> list[dict]:
        paths = self._paths(task_id)
        if not paths.events_jsonl.exists():
            return []
        events: list[dict] = []
        for raw in paths.events_jsonl.read_text(encoding='utf-8').splitlines():
            text = raw.strip()
            if not text:
                continue
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        if limit is not None and limit >= 0:
            return events[-limit:] if limit else []
        return events

    def read_log(self, task_id: str) -> str:
        paths = self._paths(task_id)
        if not paths.run_log.exists():
            return ''
        return paths.run_log.read_text(encoding='utf-8')

    # internals

    def _paths(self, task_id: str) -> TaskPaths:
        task_root = self._resolve_task_root(task_id)
        task_root.mkdir(parents=True, exist_ok=True)
        return TaskPaths(
            root=task_root,
            progress_json=task_root / 'progress.json',
            inbox_json=task_root / 'inbox.json',
            pause_json=task_root / 'pause.json',
            run_log=task_root / 'run.log',
            events_jsonl=task_root / 'events.jsonl',
            lock_file=task_root / 'supervisor.lock',
        )

    def _resolve_task_root(self, task_id: str) -> Path:
        task_id_text = str(task_id or '').strip()
        if not task_id_text:
            raise ValueError('task_id is required')

        tasks_root = (self.root / 'tasks').resolve()
        task_root = (tasks_root / task_id_text).resolve(strict=False)
        if task_root == tasks_root:
            raise ValueError('invalid task_id')
        try:
            task_root.relative_to(tasks_root)
        except ValueError as exc:
            raise ValueError('invalid task_id') from exc
        return task_root

    @staticmethod
    def _inbox_messages(payload: object) -> list[str]:
        if not isinstance(payload, dict):
            return []
        raw = payload.get('messages')
        if not isinstance(raw, list):
            return []
        return [str(item) for item in raw if str(item or '').strip()]

    @staticmethod
    def _pause_from_payload(payload: object) -> PauseRequest:
        if not isinstance(payload, dict):
            return PauseRequest(message=None)
        message = str(payload.get('message') or '').strip() or None
        requested_at = str(payload.get('requestedAt') or '').strip() or None
        return PauseRequest(message=message, requested_at=requested_at)

    @staticmethod
    def _read_json(path: Path) -> object | None:
        if not path.exists():
            return None
        try:
            text = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            _log.warning('unreadable json document path=%s', path)
            return None

    @staticmethod
    def _write_json(path: Path, payload: dict) -> None:
        tmp = path.with_name(f'.{path.name}.{os.getpid()}.tmp')
        tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding='utf-8')
        os.replace(tmp, path)

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = ['PauseRequest', 'TaskPaths', 'TaskStateStore']
