from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import secrets
from typing import Iterator


WRITER_LOCK_FILENAME = "writer.lock"


class ProcessLockError(RuntimeError):
    """Another agent process already owns the state directory."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None = None
    command: str | None = None
    started_at: str | None = None
    token: str | None = None


@contextmanager
def writer_process_lock(*, state_dir: Path, command: str) -> Iterator[LockOwner]:
    """Hold `<state_dir>/writer.lock` so only one process advances the cursor.

    A lock left behind by a dead process is reclaimed.
    """
    lock_path = state_dir / WRITER_LOCK_FILENAME
    owner = _acquire(lock_path, command=command)
    try:
        yield owner
    finally:
        _release(lock_path, owner)


def read_lock_owner(lock_path: Path) -> LockOwner:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return LockOwner()
    if not isinstance(payload, dict):
        return LockOwner()
    pid = payload.get("pid")
    command = payload.get("command")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        command=command if isinstance(command, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def _acquire(lock_path: Path, *, command: str) -> LockOwner:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    owner = LockOwner(
        pid=os.getpid(),
        command=command,
        started_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        token=secrets.token_hex(16),
    )
    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            if _reclaim_stale(lock_path):
                continue
            raise ProcessLockError(_busy_message(lock_path)) from None
        try:
            payload = {
                "pid": owner.pid,
                "command": owner.command,
                "started_at": owner.started_at,
                "token": owner.token,
            }
            os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
            os.fsync(fd)
        except Exception:
            os.close(fd)
            lock_path.unlink(missing_ok=True)
            raise
        os.close(fd)
        return owner
    raise ProcessLockError(_busy_message(lock_path))


def _release(lock_path: Path, owner: LockOwner) -> None:
    # Only remove the file if it still carries our token.
    if read_lock_owner(lock_path).token != owner.token:
        return
    lock_path.unlink(missing_ok=True)


def _reclaim_stale(lock_path: Path) -> bool:
    current = read_lock_owner(lock_path)
    if current.pid is None or current.pid == os.getpid() or _pid_is_running(current.pid):
        return False
    try:
        lock_path.unlink(missing_ok=True)
    except OSError:
        return False
    return True


def _busy_message(lock_path: Path) -> str:
    current = read_lock_owner(lock_path)
    details = [
        f"{name}={value}"
        for name, value in (("pid", current.pid), ("command", current.command))
        if value is not None
    ]
    suffix = f" ({', '.join(details)})" if details else ""
    return (
        f"Another aam-agent process appears to own {lock_path.parent}{suffix}. "
        f"Stop it, or remove {lock_path} if it is stale."
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
