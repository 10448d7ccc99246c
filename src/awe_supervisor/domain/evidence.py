from __future__ import annotations

from awe_supervisor.domain.progress import ProgressRecord

BOILERPLATE_CHECKPOINT_PREFIXES = (
    'run started',
    'run resumed',
    'run finished',
    'paused',
    'auto-validation',
    'supervisor:',
)

BOILERPLATE_SUMMARIES = frozenset(
    {
        '',
        'starting',
        'working',
        'in progress',
        'paused',
        'waiting for operator',
        'sandbox agent starting…',
        'sandbox agent starting...',
        'sandbox agent finished execution.',
    }
)

MIN_SUMMARY_PERCENT = 10


def _normalize(text: str | None) -> str:
    return ' '.join(str(text or '').strip().lower().split())


def is_boilerplate_checkpoint(description: str | None) -> bool:
    text = _normalize(description)
    if not text:
        return True
    return any(text.startswith(prefix) for prefix in BOILERPLATE_CHECKPOINT_PREFIXES)


def is_boilerplate_summary(summary: str | None) -> bool:
    return _normalize(summary) in BOILERPLATE_SUMMARIES


def meaningful_checkpoint_count(record: ProgressRecord | None) -> int:
    if record is None:
        return 0
    return sum(1 for item in record.checkpoints if not is_boilerplate_checkpoint(item.description))


def has_work_evidence(record: ProgressRecord | None) -> bool:
    """True when the record shows real work rather than lifecycle noise.

    Either one non-boilerplate checkpoint, or a non-boilerplate summary with at
    least 10 percent reported.
    """
    if record is None:
        return False
    if meaningful_checkpoint_count(record) > 0:
        return True
    return (not is_boilerplate_summary(record.summary)) and record.percent_complete >= MIN_SUMMARY_PERCENT


def evidence_marker(record: ProgressRecord | None) -> tuple[int, int, str]:
    """Comparable snapshot used to tell whether a run produced anything new."""
    if record is None:
        return (0, 0, '')
    summary = '' if is_boilerplate_summary(record.summary) else _normalize(record.summary)
    return (meaningful_checkpoint_count(record), record.percent_complete, summary)


__all__ = [
    'BOILERPLATE_CHECKPOINT_PREFIXES',
    'BOILERPLATE_SUMMARIES',
    'MIN_SUMMARY_PERCENT',
    'evidence_marker',
    'has_work_evidence',
    'is_boilerplate_checkpoint',
    'is_boilerplate_summary',
    'meaningful_checkpoint_count',
]
