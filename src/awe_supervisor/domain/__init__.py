from awe_supervisor.domain.events import EventType, normalize_event_type
from awe_supervisor.domain.evidence import evidence_marker, has_work_evidence, is_boilerplate_checkpoint
from awe_supervisor.domain.progress import (
    Checkpoint,
    ProgressRecord,
    ProgressStatus,
    TERMINAL_STATUSES,
    clamp_percent,
    normalize_status,
    utc_now_iso,
)
from awe_supervisor.domain.task import ExecutionMode, Task, TaskState, normalize_execution_mode

__all__ = [
    'Checkpoint',
    'EventType',
    'ExecutionMode',
    'ProgressRecord',
    'ProgressStatus',
    'TERMINAL_STATUSES',
    'Task',
    'TaskState',
    'clamp_percent',
    'evidence_marker',
    'has_work_evidence',
    'is_boilerplate_checkpoint',
    'normalize_event_type',
    'normalize_execution_mode',
    'normalize_status',
    'utc_now_iso',
]
