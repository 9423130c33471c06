from __future__ import annotations

import os
from pathlib import Path

import pytest

from otcsync.services.process_lock import (
    LockHeldError,
    describe_owner,
    get_lock_dir,
    lock_path_for,
    lock_scope,
    single_instance_lock,
)

PROGRAM = "5tBNDt8iL5d7zmiRNfLSwvXt6dJ8AH8hB9Cgm3HxGS4B"


def test_lock_dir_honours_environment(tmp_path: Path) -> None:
    assert get_lock_dir() == (tmp_path / "locks").resolve()


def test_single_instance_lock_blocks_second_acquire(tmp_path: Path) -> None:
    db_path = str(tmp_path / "index.db")
    with single_instance_lock(db_path=db_path, program_id=PROGRAM):
        with pytest.raises(LockHeldError, match="LOCKED:"):
            with single_instance_lock(db_path=db_path, program_id=PROGRAM):
                pass


def test_different_programs_do_not_contend(tmp_path: Path) -> None:
    db_path = str(tmp_path / "index.db")
    with single_instance_lock(db_path=db_path, program_id=PROGRAM):
        with single_instance_lock(db_path=db_path, program_id="OtherProgram11111111111111111111"):
            pass


def test_single_instance_lock_reacquire_after_release(tmp_path: Path) -> None:
    db_path = str(tmp_path / "index.db")
    with single_instance_lock(db_path=db_path, program_id=PROGRAM):
        pass

    with single_instance_lock(db_path=db_path, program_id=PROGRAM):
        pass


def test_single_instance_lock_writes_and_removes_pid(tmp_path: Path) -> None:
    db_path = str(tmp_path / "index.db")
    with single_instance_lock(db_path=db_path, program_id=PROGRAM) as lock:
        pid_path = Path(lock.path).with_suffix(".pid")
        assert lock.pid == os.getpid()
        assert pid_path.read_text(encoding="utf-8").strip() == str(lock.pid)

        owner = describe_owner(lock_scope(db_path, PROGRAM))
        assert owner.owner_pid == os.getpid()
        assert owner.owner_alive is True

    assert not pid_path.exists()


def test_lock_error_reports_owner(tmp_path: Path) -> None:
    db_path = str(tmp_path / "index.db")
    with single_instance_lock(db_path=db_path, program_id=PROGRAM):
        with pytest.raises(LockHeldError) as exc_info:
            with single_instance_lock(db_path=db_path, program_id=PROGRAM):
                pass

    assert f"owner_pid={os.getpid()}" in str(exc_info.value)


def test_scope_resolves_relative_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert lock_scope("index.db", PROGRAM) == lock_scope(str(tmp_path / "index.db"), PROGRAM)
    assert lock_path_for(lock_scope("index.db", PROGRAM)).parent == get_lock_dir()
