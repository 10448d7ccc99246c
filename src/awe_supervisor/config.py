from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    state_root: Path
    database_url: str
    service_name: str
    otel_endpoint: str | None
    agent_command: str
    capability_config: Path | None
    capability_flag: str
    dry_run: bool
    run_timeout_seconds: int
    pause_poll_seconds: float
    kill_grace_seconds: float
    alignment_max_rounds: int
    alignment_wait_seconds: int
    alignment_run_timeout_seconds: int
    inbox_poll_seconds: float
    remediation_attempts: int
    hosting_enabled: bool
    hosting_api_base: str
    hosting_token: str
    hosting_org: str
    hosting_private: bool


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name, '') or '').strip().lower()
    if not raw:
        return default
    return raw in {'1', 'true', 'yes', 'on'}


def load_settings() -> Settings:
    state_root = Path(os.getenv('AWE_STATE_ROOT', '.supervisor')).resolve()
    database_url = os.getenv('AWE_DATABASE_URL', '') or f'sqlite:///{(state_root / "tasks.db").as_posix()}'
    service_name = os.getenv('AWE_SERVICE_NAME', 'awe-supervisor')
    otel_endpoint = os.getenv('AWE_OTEL_EXPORTER_OTLP_ENDPOINT')
    agent_command = os.getenv('AWE_AGENT_COMMAND', 'claude -p --dangerously-skip-permissions')
    capability_raw = (os.getenv('AWE_CAPABILITY_CONFIG', '') or '').strip()
    capability_config = Path(capability_raw).resolve() if capability_raw else None
    capability_flag = (os.getenv('AWE_CAPABILITY_FLAG', '') or '').strip() or '--mcp-config'
    # Alignment resumes use their own, shorter timeout.
    run_timeout_seconds = _env_int('AWE_RUN_TIMEOUT_SECONDS', 7200, minimum=10)
    alignment_run_timeout_seconds = _env_int('AWE_ALIGNMENT_RUN_TIMEOUT_SECONDS', 1800, minimum=10)
    hosting_api_base = (os.getenv('AWE_HOSTING_API_BASE', '') or '').strip() or 'https://api.github.com'
    return Settings(
        state_root=state_root,
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        agent_command=agent_command,
        capability_config=capability_config,
        capability_flag=capability_flag,
        dry_run=_env_flag('AWE_DRY_RUN', False),
        run_timeout_seconds=run_timeout_seconds,
        pause_poll_seconds=_env_float('AWE_PAUSE_POLL_SECONDS', 2.0, minimum=0.01),
        kill_grace_seconds=_env_float('AWE_KILL_GRACE_SECONDS', 10.0),
        alignment_max_rounds=_env_int('AWE_ALIGNMENT_MAX_ROUNDS', 5),
        alignment_wait_seconds=_env_int('AWE_ALIGNMENT_WAIT_SECONDS', 1800),
        alignment_run_timeout_seconds=alignment_run_timeout_seconds,
        inbox_poll_seconds=_env_float('AWE_INBOX_POLL_SECONDS', 2.0, minimum=0.01),
        remediation_attempts=_env_int('AWE_REMEDIATION_ATTEMPTS', 1, minimum=0),
        hosting_enabled=_env_flag('AWE_HOSTING_ENABLED', True),
        hosting_api_base=hosting_api_base.rstrip('/'),
        hosting_token=(os.getenv('AWE_HOSTING_TOKEN', '') or '').strip(),
        hosting_org=(os.getenv('AWE_HOSTING_ORG', '') or '').strip(),
        hosting_private=_env_flag('AWE_HOSTING_PRIVATE', True),
    )
