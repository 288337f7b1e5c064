"""Single-instance lock: an atomically created directory holding our PID."""

from __future__ import annotations

import logging
import os
import pathlib
import time

log = logging.getLogger("argon_daemon")

LOCK_DIR = pathlib.Path("/var/run/argon_fan.lock")

# Grace period for a peer that has created the directory but not the pid file.
PID_SETTLE_SECONDS = 0.5


class LockError(RuntimeError):
    """The lock could not be claimed."""


class LockHeldError(LockError):
    """Another live instance owns the lock."""

    def __init__(self, pid: int) -> None:
        super().__init__("Service is already running (PID: %d). Exiting." % pid)
        self.pid = pid


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def _parse_pid(recorded: str) -> int | None:
    try:
        pid = int(recorded)
    except ValueError:
        return None
    return pid if pid > 0 else None


class PidLock:
    """mkdir-based mutual exclusion with stale-owner reclaim.

    mkdir either creates the directory or fails because it exists, so two
    instances can never both succeed. The pid file inside names the owner.
    """

    path: pathlib.Path
    held: bool

    def __init__(self, path: pathlib.Path = LOCK_DIR) -> None:
        self.path = path
        self.held = False

    @property
    def pid_file(self) -> pathlib.Path:
        return self.path / "pid"

    def acquire(self) -> None:
        """Claim the lock or raise LockHeldError/LockError."""
        if self._claim():
            return

        recorded = self._recorded()
        if not recorded:
            # A peer may be between mkdir and writing its pid.
            time.sleep(PID_SETTLE_SECONDS)
            recorded = self._recorded()
        if not recorded:
            raise LockError(
                "Could not acquire lock %s: no PID recorded. Check permissions for %s."
                % (self.path, self.path.parent)
            )

        owner = _parse_pid(recorded)
        if owner is not None and _pid_alive(owner):
            raise LockHeldError(owner)

        log.info("Stale lock detected. Cleaning up...")
        try:
            self._remove()
        except OSError as e:
            raise LockError("Could not remove stale lock %s: %s" % (self.path, e)) from e
        if not self._claim():
            raise LockError(
                "Could not acquire lock %s. Check permissions for %s."
                % (self.path, self.path.parent)
            )

    def owner(self) -> int | None:
        """PID recorded in the lock, or None if absent or unreadable."""
        return _parse_pid(self._recorded())

    def release(self) -> None:
        """Remove the pid file then the directory. Safe to call repeatedly."""
        if not self.held:
            return
        self.held = False
        try:
            self._remove()
        except OSError as e:
            log.error("Failed to remove lock %s: %s", self.path, e)

    def _claim(self) -> bool:
        try:
            self.path.mkdir()
        except FileExistsError:
            return False
        except OSError as e:
            raise LockError(
                "Could not acquire lock %s. Check permissions for %s. (%s)"
                % (self.path, self.path.parent, e)
            ) from e
        self.held = True
        try:
            self.pid_file.write_text("%d\n" % os.getpid())
        except OSError as e:
            self.release()
            raise LockError("Could not record PID in %s: %s" % (self.pid_file, e)) from e
        return True

    def _recorded(self) -> str:
        """Contents of the pid file; empty while it is absent or unreadable."""
        try:
            return self.pid_file.read_text().strip()
        except OSError:
            return ""

    def _remove(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        try:
            self.path.rmdir()
        except FileNotFoundError:
            pass
