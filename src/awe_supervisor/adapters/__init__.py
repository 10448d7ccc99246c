from __future__ import annotations

from awe_supervisor.adapters.base import (
    AgentCommand,
    ProcessRunError,
    ProcessTimeoutError,
    RunOutcome,
    RunState,
    has_flag,
    has_prompt_flag,
    split_command,
)
from awe_supervisor.adapters.runner import ProcessRunner

__all__ = [
    'AgentCommand',
    'ProcessRunError',
    'ProcessRunner',
    'ProcessTimeoutError',
    'RunOutcome',
    'RunState',
    'has_flag',
    'has_prompt_flag',
    'split_command',
]
