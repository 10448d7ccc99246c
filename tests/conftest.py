from __future__ import annotations

from pathlib import Path
import shlex
import sys
import textwrap

import pytest


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    sys.path[:] = [src_text] + [
        item for item in sys.path if str(item or '').strip() and str(item).replace('\\', '/').lower() != key
    ]


_prepend_repo_src_to_syspath()


_AGENT_PREAMBLE = '''
import json
import os
import sys
import time

PROGRESS_FILE = os.environ['AWE_PROGRESS_FILE']


def report(status='in-progress', summary='', percent=0, checkpoints=(), question=None):
    payload = {
        'taskId': os.environ['AWE_TASK_ID'],
        'leaderId': 'lead',
        'status': status,
        'summary': summary,
        'percentComplete': percent,
        'checkpoints': [{'at': '2026-01-01T00:00:00+00:00', 'description': item} for item in checkpoints],
    }
    if question:
        payload['question'] = question
    with open(PROGRESS_FILE, 'w', encoding='utf-8') as f:
        json.dump(payload, f)

'''


@pytest.fixture
def agent_command(tmp_path: Path):
    """Factory writing a throwaway agent script and returning its shell command."""
    counter = {'n': 0}

    def build(body: str) -> str:
        counter['n'] += 1
        script = tmp_path / f'agent_{counter["n"]}.py'
        script.write_text(_AGENT_PREAMBLE + textwrap.dedent(body), encoding='utf-8')
        return f'{shlex.quote(sys.executable)} {shlex.quote(str(script))}'

    return build
