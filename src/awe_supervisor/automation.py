from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Callable, Iterator

from awe_supervisor.observability import get_logger

_log = get_logger('awe_supervisor.automation')


class SupervisorLockError(RuntimeError):
    def __init__(self, message: str, *, owner_pid: int | None = None):
        super().__init__(message)
        self.owner_pid = owner_pid


def pid_exists(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def read_lock_owner(lock_path: Path) -> dict | None:
    try:
        content = Path(lock_path).read_text(encoding='utf-8').strip()
    except FileNotFoundError:
        return None
    if not content:
        return None
    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        payload['pid'] = int(payload.get('pid'))
    except (TypeError, ValueError):
        return None
    return payload


@contextmanager
def acquire_single_instance(
    lock_path: Path,
    *,
    owner: str | None = None,
    pid: int | None = None,
    is_alive: Callable[[int], bool] | None = None,
) -> Iterator[None]:
    """Hold a pid lock file for the duration of the block.

    A lock left behind by a dead process is taken over; a live holder raises
    ``SupervisorLockError``.
    """
    target = Path(lock_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    current_pid = pid or os.getpid()
    is_alive_fn = is_alive or pid_exists

    existing = read_lock_owner(target)
    if existing is not None and is_alive_fn(existing['pid']):
        raise SupervisorLockError(f'lock already held by pid={existing["pid"]}', owner_pid=existing['pid'])
    if target.exists():
        _log.info('removing stale supervisor lock path=%s', target)
        target.unlink()

    try:
        fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError as exc:
        raise SupervisorLockError('lock already held') from exc
    try:
        payload = {
            'pid': current_pid,
            'owner': owner,
            'acquired_at': datetime.now(timezone.utc).isoformat(),
        }
        os.write(fd, json.dumps(payload).encode('utf-8'))
    finally:
        os.close(fd)

    try:
        yield
    finally:
        holder = read_lock_owner(target)
        if holder is None or holder['pid'] == current_pid:
            try:
                target.unlink()
            except FileNotFoundError:
                pass


__all__ = ['SupervisorLockError', 'acquire_single_instance', 'pid_exists', 'read_lock_owner']
