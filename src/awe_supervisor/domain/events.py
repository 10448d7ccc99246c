from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    ALIGNMENT_FINISHED = 'alignment_finished'
    ALIGNMENT_ROUND = 'alignment_round'
    ALIGNMENT_STARTED = 'alignment_started'
    ALIGNMENT_TIMEOUT = 'alignment_timeout'
    CAPABILITY_RETRY = 'capability_retry'
    PAUSE_REQUESTED = 'pause_requested'
    MESSAGE_RECEIVED = 'message_received'
    REMEDIATION_STARTED = 'remediation_started'
    REPOSITORY_FAILED = 'repository_failed'
    REPOSITORY_RESOLVED = 'repository_resolved'
    RUN_FAILED = 'run_failed'
    RUN_FINISHED = 'run_finished'
    RUN_PAUSED = 'run_paused'
    RUN_STARTED = 'run_started'
    RUN_TIMED_OUT = 'run_timed_out'
    SUPERVISION_SKIPPED = 'supervision_skipped'
    VALIDATION_FINISHED = 'validation_finished'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text
