from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ProgressStatus(str, Enum):
    IN_PROGRESS = 'in-progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    BLOCKED = 'blocked'
    WAITING_FOR_HUMAN = 'waiting_for_human'


TERMINAL_STATUSES = frozenset({ProgressStatus.COMPLETED.value, ProgressStatus.FAILED.value})

_STATUS_ALIASES = {
    'in_progress': ProgressStatus.IN_PROGRESS.value,
    'inprogress': ProgressStatus.IN_PROGRESS.value,
    'running': ProgressStatus.IN_PROGRESS.value,
    'done': ProgressStatus.COMPLETED.value,
    'complete': ProgressStatus.COMPLETED.value,
    'error': ProgressStatus.FAILED.value,
    'waiting-for-human': ProgressStatus.WAITING_FOR_HUMAN.value,
    'waiting': ProgressStatus.WAITING_FOR_HUMAN.value,
}

_KNOWN_KEYS = frozenset(
    {
        'taskId',
        'leaderId',
        'percentComplete',
        'status',
        'summary',
        'checkpoints',
        'question',
        'repoUrl',
        'reportedAt',
    }
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_status(value: str | ProgressStatus | None) -> str:
    """Map loose status spellings written by agents onto the canonical set.

    Unknown values pass through lowercased so the validator can treat them as
    "other" rather than silently rewriting what the process reported.
    """
    if isinstance(value, ProgressStatus):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        return ProgressStatus.IN_PROGRESS.value
    for status in ProgressStatus:
        if text == status.value:
            return text
    return _STATUS_ALIASES.get(text, text)


def clamp_percent(value: object) -> int:
    try:
        number = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, number))


@dataclass(frozen=True)
class Checkpoint:
    at: str
    description: str

    @classmethod
    def from_value(cls, value: object) -> 'Checkpoint | None':
        if isinstance(value, str):
            text = value.strip()
            return cls(at='', description=text) if text else None
        if not isinstance(value, dict):
            return None
        description = str(value.get('description') or value.get('note') or '').strip()
        if not description:
            return None
        at = str(value.get('at') or value.get('timestamp') or '').strip()
        return cls(at=at, description=description)

    def to_dict(self) -> dict:
        return {'at': self.at, 'description': self.description}


@dataclass
class ProgressRecord:
    task_id: str
    leader_id: str = ''
    percent_complete: int = 0
    status: str = ProgressStatus.IN_PROGRESS.value
    summary: str = ''
    checkpoints: list[Checkpoint] = field(default_factory=list)
    question: str | None = None
    repo_url: str | None = None
    reported_at: str | None = None
    extra: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status == ProgressStatus.WAITING_FOR_HUMAN.value

    @classmethod
    def from_dict(cls, payload: dict, *, task_id: str = '') -> 'ProgressRecord':
        checkpoints: list[Checkpoint] = []
        raw_checkpoints = payload.get('checkpoints')
        if isinstance(raw_checkpoints, list):
            for item in raw_checkpoints:
                checkpoint = Checkpoint.from_value(item)
                if checkpoint is not None:
                    checkpoints.append(checkpoint)
        question = str(payload.get('question') or '').strip() or None
        repo_url = str(payload.get('repoUrl') or '').strip() or None
        reported_at = str(payload.get('reportedAt') or '').strip() or None
        return cls(
            task_id=str(payload.get('taskId') or task_id or '').strip(),
            leader_id=str(payload.get('leaderId') or '').strip(),
            percent_complete=clamp_percent(payload.get('percentComplete', 0)),
            status=normalize_status(payload.get('status')),
            summary=str(payload.get('summary') or '').strip(),
            checkpoints=checkpoints,
            question=question,
            repo_url=repo_url,
            reported_at=reported_at,
            extra={key: value for key, value in payload.items() if key not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict:
        out = dict(self.extra)
        out.update(
            {
                'taskId': self.task_id,
                'leaderId': self.leader_id,
                'percentComplete': clamp_percent(self.percent_complete),
                'status': self.status,
                'summary': self.summary,
                'checkpoints': [item.to_dict() for item in self.checkpoints],
            }
        )
        # question is only meaningful while waiting on the operator
        if self.question and self.is_waiting:
            out['question'] = self.question
        if self.repo_url:
            out['repoUrl'] = self.repo_url
        if self.reported_at:
            out['reportedAt'] = self.reported_at
        return out

    def add_checkpoint(self, description: str, *, at: str | None = None) -> Checkpoint:
        checkpoint = Checkpoint(at=at or utc_now_iso(), description=str(description or '').strip())
        self.checkpoints.append(checkpoint)
        return checkpoint


__all__ = [
    'Checkpoint',
    'ProgressRecord',
    'ProgressStatus',
    'TERMINAL_STATUSES',
    'clamp_percent',
    'normalize_status',
    'utc_now_iso',
]
