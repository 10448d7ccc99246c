from __future__ import annotations

import pytest

from awe_supervisor.domain import (
    Checkpoint,
    EventType,
    ProgressRecord,
    Task,
    clamp_percent,
    evidence_marker,
    has_work_evidence,
    is_boilerplate_checkpoint,
    normalize_event_type,
    normalize_execution_mode,
    normalize_status,
)
from awe_supervisor.domain.evidence import is_boilerplate_summary, meaningful_checkpoint_count


def test_progress_record_from_dict_is_tolerant_and_keeps_unknown_keys():
    record = ProgressRecord.from_dict(
        {
            'taskId': 'task-1',
            'leaderId': 'lead',
            'percentComplete': '140',
            'status': 'Waiting',
            'summary': '  needs input  ',
            'checkpoints': [
                {'at': '2026-01-01T00:00:00Z', 'description': 'Drafted outline'},
                'bare string checkpoint',
                {'description': ''},
                42,
            ],
            'question': 'Which tone?',
            'branch': 'main',
        }
    )

    assert record.task_id == 'task-1'
    assert record.percent_complete == 100
    assert record.status == 'waiting_for_human'
    assert record.summary == 'needs input'
    assert [item.description for item in record.checkpoints] == ['Drafted outline', 'bare string checkpoint']
    assert record.question == 'Which tone?'
    assert record.extra == {'branch': 'main'}
    assert record.is_waiting is True
    assert record.to_dict()['branch'] == 'main'


def test_progress_record_to_dict_omits_question_unless_waiting():
    record = ProgressRecord(task_id='t', status='in-progress', question='stale question')
    assert 'question' not in record.to_dict()
    record.status = 'waiting_for_human'
    assert record.to_dict()['question'] == 'stale question'


def test_progress_record_from_dict_uses_fallback_task_id():
    record = ProgressRecord.from_dict({'status': 'done'}, task_id='fallback')
    assert record.task_id == 'fallback'
    assert record.status == 'completed'
    assert record.is_terminal is True


@pytest.mark.parametrize(
    ('raw', 'expected'),
    [
        (None, 'in-progress'),
        ('in_progress', 'in-progress'),
        ('COMPLETED', 'completed'),
        ('error', 'failed'),
        ('blocked', 'blocked'),
        ('sleeping', 'sleeping'),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_clamp_percent_handles_garbage():
    assert clamp_percent(None) == 0
    assert clamp_percent('abc') == 0
    assert clamp_percent(-5) == 0
    assert clamp_percent(55.9) == 55


def test_checkpoint_from_value_accepts_note_alias():
    checkpoint = Checkpoint.from_value({'timestamp': 'x', 'note': 'Wrote tests'})
    assert checkpoint == Checkpoint(at='x', description='Wrote tests')


def test_boilerplate_detection():
    assert is_boilerplate_checkpoint('Run started (attempt 1)') is True
    assert is_boilerplate_checkpoint('Paused by operator: lunch') is True
    assert is_boilerplate_checkpoint('supervisor: timed out') is True
    assert is_boilerplate_checkpoint('Implemented the parser') is False
    assert is_boilerplate_summary('  Working ') is True
    assert is_boilerplate_summary('Sandbox agent starting…') is True
    assert is_boilerplate_summary('Parser handles nested lists') is False


def test_has_work_evidence_from_checkpoints_or_summary():
    assert has_work_evidence(None) is False
    noise = ProgressRecord(task_id='t', summary='working', percent_complete=90)
    noise.add_checkpoint('Run started')
    assert meaningful_checkpoint_count(noise) == 0
    assert has_work_evidence(noise) is False

    real = ProgressRecord(task_id='t')
    real.add_checkpoint('Published draft to docs/notes.md')
    assert has_work_evidence(real) is True

    summary_only = ProgressRecord(task_id='t', summary='Parser merged', percent_complete=9)
    assert has_work_evidence(summary_only) is False
    summary_only.percent_complete = 10
    assert has_work_evidence(summary_only) is True


def test_evidence_marker_ignores_boilerplate():
    record = ProgressRecord(task_id='t', summary='Starting')
    record.add_checkpoint('run started')
    assert evidence_marker(record) == (0, 0, '')
    record.add_checkpoint('Drafted intro')
    assert evidence_marker(record)[0] == 1


def test_normalize_execution_mode():
    assert normalize_execution_mode(None) == 'solo'
    assert normalize_execution_mode('', collaborators=['bob']) == 'team'
    assert normalize_execution_mode('TEAM') == 'team'
    with pytest.raises(ValueError, match='invalid execution_mode'):
        normalize_execution_mode('swarm')


def test_task_roster_dedupes_leader():
    task = Task.from_row(
        {
            'task_id': 't1',
            'title': 'Write notes',
            'description': '',
            'leader_id': 'alice',
            'collaborators': ['bob', 'alice', ' ', 'bob'],
        }
    )
    assert task.roster == ['alice', 'bob']
    assert task.status == 'queued'


def test_normalize_event_type():
    assert normalize_event_type(EventType.RUN_PAUSED) == 'run_paused'
    assert normalize_event_type(' Custom ') == 'custom'
    with pytest.raises(ValueError):
        normalize_event_type('')
