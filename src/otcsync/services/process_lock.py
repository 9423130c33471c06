from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO


class LockHeldError(RuntimeError):
    """Another cranker already owns the store/program scope."""


@dataclass(frozen=True)
class ProcessLock:
    path: str
    pid: int


@dataclass(frozen=True)
class LockOwner:
    lock_path: Path
    pid_path: Path
    owner_pid: int | None
    owner_alive: bool


def get_lock_dir() -> Path:
    configured = os.getenv("OTCSYNC_LOCK_DIR")
    if configured:
        lock_dir = Path(configured).expanduser()
    elif os.name == "nt":
        lock_dir = Path(os.getenv("LOCALAPPDATA") or tempfile.gettempdir()) / "otcsync" / "locks"
    else:
        lock_dir = Path(tempfile.gettempdir()) / "otcsync-locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    if not lock_dir.is_dir():
        raise RuntimeError(f"lock directory is not a directory: {lock_dir}")
    return lock_dir.resolve()


def lock_scope(db_path: str, program_id: str) -> str:
    return f"{Path(db_path).expanduser().resolve()}::{program_id}"


def lock_path_for(scope: str) -> Path:
    digest = hashlib.sha256(scope.encode()).hexdigest()[:16]
    return get_lock_dir() / f"otcsync-cranker-{digest}.lock"


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def describe_owner(scope: str) -> LockOwner:
    lock_path = lock_path_for(scope)
    pid_path = lock_path.with_suffix(".pid")
    try:
        raw = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        raw = ""
    owner_pid = int(raw) if raw.isdigit() else None
    return LockOwner(
        lock_path=lock_path,
        pid_path=pid_path,
        owner_pid=owner_pid,
        owner_alive=_pid_alive(owner_pid) if owner_pid is not None else False,
    )


def _try_lock(fh: BinaryIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt_mod: Any = msvcrt
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(fh: BinaryIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt_mod: Any = msvcrt
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


@contextmanager
def single_instance_lock(*, db_path: str, program_id: str) -> Iterator[ProcessLock]:
    """Hold an OS file lock for one (store, program) pair for the life of the block.

    Uses flock/msvcrt, so it is only reliable on local filesystems.
    """
    scope = lock_scope(db_path, program_id)
    path = lock_path_for(scope)
    pid_path = path.with_suffix(".pid")
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    fh: BinaryIO = os.fdopen(fd, "r+b")
    pid = os.getpid()
    acquired = False
    try:
        try:
            _try_lock(fh)
            acquired = True
        except OSError as exc:
            owner = describe_owner(scope)
            owner_text = (
                f" owner_pid={owner.owner_pid} owner_alive={owner.owner_alive}"
                if owner.owner_pid is not None
                else ""
            )
            raise LockHeldError(
                "LOCKED: another cranker is already running for "
                f"scope={scope} lock_path={path}.{owner_text}"
            ) from exc

        pid_path.write_text(f"{pid}\n", encoding="utf-8")
        yield ProcessLock(path=str(path), pid=pid)
    finally:
        if acquired:
            try:
                _unlock(fh)
            except OSError:
                pass
        fh.close()
        if acquired:
            try:
                if pid_path.read_text(encoding="utf-8").strip() == str(pid):
                    pid_path.unlink()
            except OSError:
                pass
