from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
import shlex


class RunState(str, Enum):
    DONE = 'done'
    PAUSED = 'paused'


class ProcessRunError(RuntimeError):
    """The agent process could not be started or exited with a failure code."""

    def __init__(self, message: str, *, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class ProcessTimeoutError(ProcessRunError):
    def __init__(self, message: str, *, timeout_seconds: float):
        super().__init__(message, returncode=None)
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True)
class RunOutcome:
    state: str
    returncode: int | None
    duration_seconds: float
    output_chars: int = 0
    pause_message: str | None = None
    capability_retried: bool = False

    @property
    def paused(self) -> bool:
        return self.state == RunState.PAUSED.value


def split_command(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def has_prompt_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text == '--prompt' or text.startswith('--prompt='):
            return True
    return False


def has_flag(argv: list[str], flag: str) -> bool:
    for token in argv:
        text = str(token).strip()
        if text == flag or text.startswith(flag + '='):
            return True
    return False


class AgentCommand:
    """Builds the argv for one invocation of the agent executable."""

    def __init__(self, *, command: str, capability_flag: str = '--mcp-config'):
        self.command = str(command or '').strip()
        self.capability_flag = str(capability_flag or '').strip() or '--mcp-config'

    def build_argv(self, *, capability_config: Path | None = None) -> list[str]:
        argv = split_command(self.command)
        if not argv:
            raise ProcessRunError('agent command is not configured')
        if capability_config is not None and not has_flag(argv, self.capability_flag):
            argv.extend([self.capability_flag, str(capability_config)])
        return argv

    def prepare_invocation(self, *, argv: list[str], prompt: str) -> tuple[list[str], str]:
        """Return the final argv and the text to write on stdin.

        Commands that declare ``--prompt`` take the prompt as that flag's value;
        everything else reads it from stdin.
        """
        if not has_prompt_flag(argv):
            return list(argv), prompt
        patched: list[str] = []
        idx = 0
        while idx < len(argv):
            token = str(argv[idx])
            if token == '--prompt':
                patched.extend(['--prompt', prompt])
                idx += 2 if idx + 1 < len(argv) and not str(argv[idx + 1]).startswith('-') else 1
                continue
            if token.startswith('--prompt='):
                patched.append(f'--prompt={prompt}')
                idx += 1
                continue
            patched.append(token)
            idx += 1
        return patched, ''


__all__ = [
    'AgentCommand',
    'ProcessRunError',
    'ProcessTimeoutError',
    'RunOutcome',
    'RunState',
    'has_flag',
    'has_prompt_flag',
    'split_command',
]
