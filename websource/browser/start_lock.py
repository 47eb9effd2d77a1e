from __future__ import annotations

import contextlib
import io
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from .paths import start_lock_file


def _lock_nonblocking(fd: int) -> bool:
    """Take an exclusive lock on ``fd``; False when someone else has it."""
    try:
        if sys.platform == "win32":
            import msvcrt  # type: ignore

            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except ImportError:
        # No locking primitive on this platform: behave as uncontended.
        return True
    except OSError:
        return False
    return True


def _unlock(fd: int) -> None:
    with contextlib.suppress(ImportError, OSError):
        if sys.platform == "win32":
            import msvcrt  # type: ignore

            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            import fcntl

            fcntl.flock(fd, fcntl.LOCK_UN)


@dataclass(slots=True)
class StartLock:
    """Serialises "start" attempts for one session name across processes.

    A starting client keeps it from the pre-check until the spawned daemon's
    record is readable or the attempt has failed, so a second starter always
    sees the outcome of the first.
    """

    path: Path
    _fp: io.TextIOWrapper | None = None

    @property
    def held(self) -> bool:
        return self._fp is not None

    def try_acquire(self) -> bool:
        if self.held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")  # noqa: SIM115
        if not _lock_nonblocking(handle.fileno()):
            handle.close()
            return False
        # Holder pid for whoever inspects a stuck lock file.
        with contextlib.suppress(OSError):
            handle.seek(0)
            handle.truncate(0)
            handle.write(f"pid={os.getpid()}\n")
            handle.flush()
        self._fp = handle
        return True

    def acquire(self, timeout: float, *, poll_interval: float = 0.1) -> bool:
        give_up_at = time.monotonic() + max(0.0, float(timeout))
        while not self.try_acquire():
            if time.monotonic() >= give_up_at:
                return False
            time.sleep(poll_interval)
        return True

    def release(self) -> None:
        handle, self._fp = self._fp, None
        if handle is None:
            return
        _unlock(handle.fileno())
        with contextlib.suppress(OSError):
            handle.close()


def session_start_lock(locks_dir: Path, name: str) -> StartLock:
    return StartLock(path=start_lock_file(locks_dir, name))


__all__ = ["StartLock", "session_start_lock"]
