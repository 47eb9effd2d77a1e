"""Disk-backed session records shared by the daemon and its clients.

Design
- One JSON document per session under the sessions directory.
- Creation is atomic create-if-absent: the fully populated record is written to
  a private temp file and hard-linked into place, so readers never observe a
  partial record and only one writer can win a name.
- Updates are read-modify-write with an atomic replace.
- Existence is not liveness: callers use `is_active` (or the control channel)
  and act on a negative answer themselves.
"""

from __future__ import annotations

import contextlib
import errno
import json
import logging
import os
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import PersistenceError, SessionAlreadyActiveError
from .paths import ensure_dir, sanitize_session_name, session_file

_LOGGER = logging.getLogger("websource.browser.session_store")

_JSON_KEYS = {
    "name": "name",
    "ws_endpoint": "wsEndpoint",
    "pid": "pid",
    "control_port": "controlPort",
    "debug_port": "debugPort",
    "headless": "headless",
    "created": "created",
    "last_activity": "lastActivity",
    "current_url": "currentUrl",
}

# Filesystems without hard links fall back to O_EXCL creation.
_NO_LINK_ERRNOS = {errno.EPERM, errno.ENOTSUP, errno.EXDEV, errno.ENOSYS, errno.EACCES}


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str | None) -> float | None:
    """ISO-8601 string -> epoch seconds (None if unparseable)."""
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


@dataclass
class SessionRecord:
    name: str
    ws_endpoint: str
    pid: int
    control_port: int | None = None
    debug_port: int | None = None
    headless: bool = True
    created: str = ""
    last_activity: str = ""
    current_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {_JSON_KEYS[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            key = _JSON_KEYS[f.name]
            if key in data:
                kwargs[f.name] = data[key]
        if not kwargs.get("name") or not kwargs.get("ws_endpoint") or kwargs.get("pid") is None:
            raise ValueError("session record is missing name/wsEndpoint/pid")
        kwargs["pid"] = int(kwargs["pid"])
        for key in ("control_port", "debug_port"):
            if kwargs.get(key) is not None:
                kwargs[key] = int(kwargs[key])
        return cls(**kwargs)


def _default_probe(endpoint: str, timeout: float) -> bool:
    from .capability import probe_endpoint

    return probe_endpoint(endpoint, timeout=timeout)


def _default_control_probe(port: int, timeout: float) -> bool:
    # `status` has no side effects on the daemon, unlike `ping`.
    from .control import status

    return bool(status(port, timeout=timeout).get("active"))


class SessionStore:
    """Mapping of session name -> SessionRecord, persisted as JSON files."""

    def __init__(
        self,
        sessions_dir: Path,
        *,
        probe: Callable[[str, float], bool] | None = None,
        control_probe: Callable[[int, float], bool] | None = None,
        probe_timeout: float = 2.0,
    ) -> None:
        self.sessions_dir = Path(sessions_dir)
        self._probe = probe or _default_probe
        self._control_probe = control_probe or _default_control_probe
        self._probe_timeout = float(probe_timeout)
        self.ensure_sessions_dir()

    def ensure_sessions_dir(self) -> None:
        if not self.sessions_dir.exists():
            ensure_dir(self.sessions_dir)
            _LOGGER.debug("Created sessions directory: %s", self.sessions_dir)

    def session_file(self, name: str) -> Path:
        return session_file(self.sessions_dir, name)

    def exists(self, name: str) -> bool:
        return self.session_file(name).exists()

    def create(
        self,
        name: str,
        ws_endpoint: str,
        pid: int,
        *,
        control_port: int,
        debug_port: int | None = None,
        headless: bool = True,
        current_url: str | None = None,
    ) -> SessionRecord:
        now = iso_now()
        record = SessionRecord(
            name=sanitize_session_name(name),
            ws_endpoint=ws_endpoint,
            pid=int(pid),
            control_port=int(control_port),
            debug_port=debug_port,
            headless=bool(headless),
            created=now,
            last_activity=now,
            current_url=current_url,
        )
        path = self.session_file(name)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            try:
                os.link(tmp, path)
            except OSError as exc:
                if exc.errno not in _NO_LINK_ERRNOS:
                    raise
                self._create_exclusive(path, tmp.read_bytes())
        except FileExistsError:
            raise SessionAlreadyActiveError(
                f"Session '{record.name}' already exists", session=record.name
            ) from None
        except OSError as exc:
            raise PersistenceError(
                f"Failed to write session '{record.name}': {exc}", session=record.name, suggestion=""
            ) from exc
        finally:
            with contextlib.suppress(OSError):
                tmp.unlink()
        _LOGGER.debug("Session created: %s (PID: %s)", record.name, record.pid)
        return record

    @staticmethod
    def _create_exclusive(path: Path, payload: bytes) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fp:
            fp.write(payload)

    def get(self, name: str) -> SessionRecord | None:
        path = self.session_file(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            _LOGGER.error("Failed to read session %s: %s", name, exc)
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("session record is not an object")
            return SessionRecord.from_dict(data)
        except (ValueError, TypeError) as exc:
            _LOGGER.error("Failed to read session %s: %s", name, exc)
            return None

    def update(self, name: str, *, owner_pid: int | None = None, **changes: Any) -> bool:
        unknown = set(changes) - set(_JSON_KEYS) - {"name"}
        if unknown:
            raise TypeError(f"unknown session fields: {sorted(unknown)}")
        record = self.get(name)
        if record is None:
            return False
        if owner_pid is not None and record.pid != int(owner_pid):
            _LOGGER.debug("Skip update of %s: owned by pid %s", name, record.pid)
            return False
        for key, value in changes.items():
            setattr(record, key, value)
        path = self.session_file(name)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise PersistenceError(
                f"Failed to update session '{name}': {exc}", session=name, suggestion=""
            ) from exc
        return True

    def touch(self, name: str, *, owner_pid: int | None = None) -> bool:
        return self.update(name, owner_pid=owner_pid, last_activity=iso_now())

    def delete(self, name: str, *, owner_pid: int | None = None) -> bool:
        if owner_pid is not None:
            record = self.get(name)
            if record is not None and record.pid != int(owner_pid):
                _LOGGER.debug("Skip delete of %s: owned by pid %s", name, record.pid)
                return False
        try:
            self.session_file(name).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(
                f"Failed to delete session '{name}': {exc}", session=name, suggestion=""
            ) from exc
        _LOGGER.debug("Session deleted: %s", name)
        return True

    def list(self) -> list[SessionRecord]:
        if not self.sessions_dir.exists():
            return []
        records: list[SessionRecord] = []
        for path in self.sessions_dir.glob("*.json"):
            if path.name.startswith("."):
                continue
            record = self.get(path.stem)
            if record is not None:
                records.append(record)
        return records

    def is_active(self, name: str) -> bool:
        """Probe the daemon's control port, then the browser endpoint.

        Both must answer: a browser orphaned by a killed daemon is not an
        active session. Never mutates the store.
        """
        record = self.get(name)
        if record is None or not record.control_port:
            return False
        try:
            if not self._control_probe(record.control_port, self._probe_timeout):
                return False
            return bool(self._probe(record.ws_endpoint, self._probe_timeout))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("Session %s appears inactive: %s", name, exc)
            return False


__all__ = ["SessionRecord", "SessionStore", "iso_now", "parse_timestamp"]
