"""Unit tests for argon_lock.py."""
# pyright: basic
# ruff: noqa: SLF001

from __future__ import annotations

import os
import pathlib
import subprocess
from unittest.mock import patch

import pytest

import argon_lock


@pytest.fixture
def lock_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / "argon_fan.lock"


def _dead_pid() -> int:
    p = subprocess.Popen(["true"])
    _ = p.wait()
    return p.pid


class TestPidAlive:
    def test_self(self) -> None:
        assert argon_lock._pid_alive(os.getpid())

    def test_reaped_child(self) -> None:
        assert not argon_lock._pid_alive(_dead_pid())


class TestPidLock:
    def test_acquire_records_pid(self, lock_dir: pathlib.Path) -> None:
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        assert lock.held
        assert lock_dir.is_dir()
        assert (lock_dir / "pid").read_text() == "%d\n" % os.getpid()
        assert lock.owner() == os.getpid()

    def test_second_instance_rejected(self, lock_dir: pathlib.Path) -> None:
        first = argon_lock.PidLock(lock_dir)
        first.acquire()
        second = argon_lock.PidLock(lock_dir)
        with pytest.raises(argon_lock.LockHeldError) as exc:
            second.acquire()
        assert exc.value.pid == os.getpid()
        assert "already running" in str(exc.value)
        assert not second.held
        # The live owner's lock is untouched.
        assert first.owner() == os.getpid()

    def test_stale_lock_reclaimed(self, lock_dir: pathlib.Path) -> None:
        lock_dir.mkdir()
        (lock_dir / "pid").write_text("%d\n" % _dead_pid())
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        assert lock.held
        assert lock.owner() == os.getpid()

    def test_lock_without_pid_file_refused(self, lock_dir: pathlib.Path) -> None:
        # A peer that has made the directory but not yet written its pid.
        lock_dir.mkdir()
        lock = argon_lock.PidLock(lock_dir)
        with patch.object(argon_lock.time, "sleep") as sleep:
            with pytest.raises(argon_lock.LockError, match="no PID recorded") as exc:
                lock.acquire()
        sleep.assert_called_once_with(argon_lock.PID_SETTLE_SECONDS)
        assert not isinstance(exc.value, argon_lock.LockHeldError)
        assert not lock.held
        assert lock_dir.is_dir()

    def test_lock_with_empty_pid_file_refused(self, lock_dir: pathlib.Path) -> None:
        lock_dir.mkdir()
        (lock_dir / "pid").write_text("")
        lock = argon_lock.PidLock(lock_dir)
        with patch.object(argon_lock.time, "sleep"):
            with pytest.raises(argon_lock.LockError, match="no PID recorded"):
                lock.acquire()
        assert (lock_dir / "pid").exists()

    def test_peer_pid_written_during_grace_period(self, lock_dir: pathlib.Path) -> None:
        lock_dir.mkdir()

        def peer_writes_pid(_seconds: float) -> None:
            (lock_dir / "pid").write_text("%d\n" % os.getpid())

        lock = argon_lock.PidLock(lock_dir)
        with patch.object(argon_lock.time, "sleep", side_effect=peer_writes_pid):
            with pytest.raises(argon_lock.LockHeldError):
                lock.acquire()
        assert not lock.held

    def test_stale_lock_with_garbage_pid(self, lock_dir: pathlib.Path) -> None:
        lock_dir.mkdir()
        (lock_dir / "pid").write_text("not-a-pid\n")
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        assert lock.owner() == os.getpid()

    def test_owner_terminated_without_release(self, lock_dir: pathlib.Path) -> None:
        first = argon_lock.PidLock(lock_dir)
        first.acquire()
        # Owner dies without releasing.
        with patch.object(argon_lock, "_pid_alive", return_value=False):
            second = argon_lock.PidLock(lock_dir)
            second.acquire()
        assert second.held

    def test_reclaim_retry_fails(self, lock_dir: pathlib.Path) -> None:
        lock_dir.mkdir()
        (lock_dir / "pid").write_text("%d\n" % _dead_pid())
        lock = argon_lock.PidLock(lock_dir)
        with patch.object(argon_lock.PidLock, "_remove", lambda self: None):
            with pytest.raises(argon_lock.LockError, match="Check permissions") as exc:
                lock.acquire()
        assert not isinstance(exc.value, argon_lock.LockHeldError)
        assert not lock.held

    def test_mkdir_permission_denied(self, lock_dir: pathlib.Path) -> None:
        lock = argon_lock.PidLock(lock_dir)
        with patch.object(pathlib.Path, "mkdir", side_effect=PermissionError(13, "denied")):
            with pytest.raises(argon_lock.LockError, match="Check permissions"):
                lock.acquire()

    def test_release_removes_artifacts(self, lock_dir: pathlib.Path) -> None:
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        lock.release()
        assert not lock_dir.exists()
        assert not lock.held

    def test_release_idempotent(self, lock_dir: pathlib.Path) -> None:
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock_dir.exists()

    def test_release_without_acquire_leaves_other_owner(
        self, lock_dir: pathlib.Path
    ) -> None:
        owner = argon_lock.PidLock(lock_dir)
        owner.acquire()
        other = argon_lock.PidLock(lock_dir)
        other.release()
        assert lock_dir.is_dir()

    def test_release_tolerates_missing_artifacts(self, lock_dir: pathlib.Path) -> None:
        lock = argon_lock.PidLock(lock_dir)
        lock.acquire()
        (lock_dir / "pid").unlink()
        lock_dir.rmdir()
        lock.release()
        assert not lock.held

    def test_reacquire_after_release(self, lock_dir: pathlib.Path) -> None:
        first = argon_lock.PidLock(lock_dir)
        first.acquire()
        first.release()
        second = argon_lock.PidLock(lock_dir)
        second.acquire()
        assert second.held
