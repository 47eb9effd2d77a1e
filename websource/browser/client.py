"""Per-invocation client: session resolution plus direct page operations.

A `WebSourceBrowser` lives for one command. It finds (or starts) the named
session's daemon through the record store and the control channel, then
talks to Chrome directly over CDP. The daemon is never in the hot path.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import control
from .capability import BrowserHandle, probe_endpoint
from .config import DEFAULT_SESSION, BrowserConfig, DaemonSpawnEnv, SessionConfig
from .errors import (
    CapabilityError,
    CdpError,
    ControlChannelError,
    NavigationTimeoutError,
    PersistenceError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    SessionStaleError,
    SessionStartTimeoutError,
)
from .page import BrowserPage
from .paths import sanitize_session_name
from .session_store import SessionRecord, SessionStore
from .start_lock import session_start_lock

_LOGGER = logging.getLogger("websource.browser.client")

DAEMON_MODULE = "websource.browser.main"

# Directory that holds the `websource` namespace package.
PACKAGE_ROOT = Path(__file__).resolve().parents[2]


def daemon_env(name: str, headless: bool, base: dict[str, str] | None = None) -> dict[str, str]:
    env = DaemonSpawnEnv(session_name=name, headless=headless).to_env(base)
    # A checkout run (scripts/, pytest pythonpath) only has the root on sys.path
    # in-process; the child needs it too, whatever its working directory.
    parts = [str(Path(p).resolve()) for p in env.get("PYTHONPATH", "").split(os.pathsep) if p]
    if str(PACKAGE_ROOT) not in parts:
        parts.insert(0, str(PACKAGE_ROOT))
    env["PYTHONPATH"] = os.pathsep.join(parts)
    return env


def spawn_daemon(name: str, headless: bool) -> subprocess.Popen:
    """Start a detached daemon process for `name`.

    Parameters travel in the environment so they stay out of process listings.
    """
    return subprocess.Popen(
        [sys.executable, "-m", DAEMON_MODULE],
        env=daemon_env(name, headless),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )


def screenshot_filename(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
    return f"websource-browser-screenshot-{stamp}.png"


class WebSourceBrowser:
    def __init__(
        self,
        *,
        config: SessionConfig | None = None,
        browser_config: BrowserConfig | None = None,
        store: SessionStore | None = None,
        spawn: Callable[[str, bool], subprocess.Popen] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or SessionConfig.from_env()
        self.browser_config = browser_config or BrowserConfig.from_env()
        self.store = store or SessionStore(self.config.sessions_dir)
        self._spawn = spawn or spawn_daemon
        self._sleep = sleep

        self.handle: BrowserHandle | None = None
        self.page: BrowserPage | None = None
        self.current_session: SessionRecord | None = None
        self.current_url: str | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Session lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start_session(self, name: str = DEFAULT_SESSION, headless: bool = True) -> dict[str, Any]:
        """Spawn a daemon for `name` and wait until it has published its record."""
        name = sanitize_session_name(name)
        lock = session_start_lock(self.config.locks_dir, name)
        bound = self.config.start_attempts * self.config.start_poll_interval
        if not lock.acquire(timeout=bound + self.config.control_timeout):
            raise SessionAlreadyActiveError(f"Session '{name}' is being started by another process", session=name)
        try:
            return self._start_locked(name, headless)
        finally:
            lock.release()

    def _start_locked(self, name: str, headless: bool) -> dict[str, Any]:
        existing = self.store.get(name)
        if existing is not None:
            if self.store.is_active(name):
                raise SessionAlreadyActiveError(f"Session '{name}' already exists and is active", session=name)
            self._discard_stale(existing)
            _LOGGER.warning("Cleaned up stale session: %s", name)
        elif self.store.exists(name):
            # Unreadable record: nobody can attach to it.
            self._delete_record(name)

        _LOGGER.info("Starting session daemon: %s", name)
        proc = self._spawn(name, headless)

        for _ in range(max(1, int(self.config.start_attempts))):
            self._sleep(self.config.start_poll_interval)
            record = self.store.get(name)
            if record is not None and record.control_port:
                if record.pid != proc.pid:
                    raise SessionAlreadyActiveError(
                        f"Session '{name}' was started by another process (pid {record.pid})", session=name
                    )
                _LOGGER.info("Session daemon '%s' started (pid %s)", name, record.pid)
                return {
                    "success": True,
                    "sessionName": name,
                    "pid": record.pid,
                    "controlPort": record.control_port,
                }
            code = proc.poll()
            if code is not None:
                raise SessionStartTimeoutError(
                    f"Session daemon '{name}' exited with code {code} before becoming ready", session=name
                )

        with contextlib.suppress(OSError):
            proc.terminate()
        raise SessionStartTimeoutError("Daemon failed to start within timeout period", session=name)

    def connect_to_session(self, name: str = DEFAULT_SESSION) -> SessionRecord:
        """Attach to a live session, proving the record stale if its daemon is gone."""
        name = sanitize_session_name(name)
        if self.current_session is not None and self.current_session.name == name and self.page is not None:
            return self.current_session

        record = self.store.get(name)
        if record is None:
            raise SessionNotFoundError(f"Session '{name}' not found", session=name)

        _LOGGER.debug("Connecting to session: %s", name)
        self._ping_or_stale(record)

        self.disconnect()
        handle: BrowserHandle | None = None
        try:
            handle = BrowserHandle.connect(
                record.ws_endpoint,
                timeout=self.config.control_timeout,
                page_timeout=self.browser_config.cdp_timeout,
            )
            page = handle.attach_or_create_page()
        except CdpError as exc:
            if handle is not None:
                handle.disconnect()
            self._discard_stale(record)
            raise SessionStaleError(f"Session '{name}' browser is unreachable: {exc}", session=name) from exc

        self.handle = handle
        self.page = page
        self.current_session = record
        try:
            self.current_url = page.get_url() or record.current_url or "about:blank"
        except (CdpError, CapabilityError):
            self.current_url = record.current_url or "about:blank"
        _LOGGER.debug("Connected to session '%s' at %s", name, self.current_url)
        return record

    def stop_session(self, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        name = sanitize_session_name(name)
        record = self.store.get(name)
        if record is None:
            raise SessionNotFoundError(f"Session '{name}' not found", session=name)

        if self.current_session is not None and self.current_session.name == name:
            self.disconnect()
        try:
            BrowserHandle.connect(record.ws_endpoint, timeout=self.config.control_timeout).close()
        except CdpError as exc:
            _LOGGER.warning("Error closing browser for session %s: %s", name, exc)

        self._delete_record(name)
        _LOGGER.info("Session '%s' stopped", name)
        return {"success": True, "sessionName": name}

    def list_sessions(self) -> list[dict[str, Any]]:
        sessions = []
        for record in self.store.list():
            data = record.to_dict()
            data["active"] = self.store.is_active(record.name)
            sessions.append(data)
        return sessions

    def ping_session(self, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        record = self._require_record(name)
        self._ping_or_stale(record)
        return {"success": True, "sessionName": record.name, "reply": control.PONG}

    def session_status(self, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        record = self._require_record(name)
        try:
            data = control.status(self._control_port(record), timeout=self.config.control_timeout)
        except ControlChannelError as exc:
            self._discard_stale(record)
            raise SessionStaleError(
                f"Session '{record.name}' is no longer active ({exc.reason})", session=record.name
            ) from exc
        return {"success": True, "sessionName": record.name, **data}

    def disconnect(self) -> None:
        """Drop this invocation's connections; the session's browser keeps running."""
        if self.page is not None:
            with contextlib.suppress(Exception):
                self.page.close()
        if self.handle is not None:
            self.handle.disconnect()
        self.page = None
        self.handle = None
        self.current_session = None
        self.current_url = None

    def _require_record(self, name: str) -> SessionRecord:
        name = sanitize_session_name(name)
        record = self.store.get(name)
        if record is None:
            raise SessionNotFoundError(f"Session '{name}' not found", session=name)
        return record

    @staticmethod
    def _control_port(record: SessionRecord) -> int:
        if not record.control_port:
            raise ControlChannelError(f"Session '{record.name}' has no control port", session=record.name)
        return record.control_port

    def _ping_or_stale(self, record: SessionRecord) -> None:
        try:
            control.ping(self._control_port(record), timeout=self.config.control_timeout)
        except ControlChannelError as exc:
            self._discard_stale(record)
            raise SessionStaleError(
                f"Session '{record.name}' is no longer active ({exc.reason})", session=record.name
            ) from exc

    def _discard_stale(self, record: SessionRecord) -> None:
        """Remove a record proven stale and close its orphaned browser, if any."""
        try:
            self.store.delete(record.name, owner_pid=record.pid)
        except PersistenceError as exc:
            _LOGGER.error("Failed to delete stale session %s: %s", record.name, exc)
        if not probe_endpoint(record.ws_endpoint, timeout=1.0):
            return
        _LOGGER.warning("Closing orphaned browser of stale session %s", record.name)
        try:
            BrowserHandle.connect(record.ws_endpoint, timeout=1.0).close()
        except CdpError as exc:
            _LOGGER.debug("Orphaned browser close failed: %s", exc)

    def _delete_record(self, name: str) -> None:
        try:
            self.store.delete(name)
        except PersistenceError as exc:
            _LOGGER.error("Failed to delete session %s: %s", name, exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Page operations
    # ─────────────────────────────────────────────────────────────────────────

    def _page(self, name: str) -> BrowserPage:
        self.connect_to_session(name)
        assert self.page is not None
        return self.page

    @contextlib.contextmanager
    def _capability(self, name: str, target: str | None) -> Iterator[None]:
        """Surface raw CDP failures as capability errors for `target`."""
        try:
            yield
        except CapabilityError as exc:
            if exc.session is None:
                exc.session = sanitize_session_name(name)
            raise
        except CdpError as exc:
            raise CapabilityError(str(exc), target=target, session=sanitize_session_name(name)) from exc

    def navigate(self, url: str, name: str = DEFAULT_SESSION, wait_time: int = 2000) -> dict[str, Any]:
        page = self._page(name)
        _LOGGER.info("Navigating to: %s", url)
        with self._capability(name, url):
            info = page.navigate(url, timeout_ms=30000)
            if wait_time > 0:
                self._sleep(wait_time / 1000.0)
            info = page.page_info() or info
            overview = page.overview()
        self.current_url = info.get("url") or url
        return {
            "success": True,
            "pageInfo": info,
            "selectors": {
                "totalElements": overview.get("totalElements", 0),
                "commonSelectors": overview.get("commonSelectors", []),
                "idSelectors": overview.get("idSelectors", []),
                "classSelectors": overview.get("classSelectors", []),
            },
        }

    def refresh_page(self, name: str = DEFAULT_SESSION, wait_time: int = 2000) -> dict[str, Any]:
        page = self._page(name)
        _LOGGER.info("Refreshing page: %s", self.current_url)
        with self._capability(name, self.current_url):
            try:
                info = page.reload(15000, wait_for_load=True)
            except NavigationTimeoutError as exc:
                _LOGGER.warning("Reload did not finish loading (%s), retrying without load wait", exc.reason)
                info = page.reload(10000, wait_for_load=False)
            if wait_time > 0:
                self._sleep(wait_time / 1000.0)
            info = page.page_info() or info
        self.current_url = info.get("url") or self.current_url
        return {"success": True, "pageInfo": info}

    def analyze_selectors(self, selector: str | None = None, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        page = self._page(name)
        with self._capability(name, selector):
            if selector:
                return {"success": True, "analysis": page.child_selectors(selector)}
            return {"success": True, "analysis": page.overview()}

    def execute_javascript(self, code: str, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        page = self._page(name)
        _LOGGER.debug("Executing JavaScript (%d chars)", len(code))
        with self._capability(name, code):
            result = page.evaluate(code)
        return {"success": True, "result": result}

    def take_screenshot(self, filename: str | None = None, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        page = self._page(name)
        target = filename or screenshot_filename()
        with self._capability(name, target):
            path = page.capture_full_page(target)
        _LOGGER.info("Screenshot saved: %s", path)
        return {"success": True, "path": path}

    def view_element(self, selector: str | None = None, name: str = DEFAULT_SESSION) -> dict[str, Any]:
        page = self._page(name)
        with self._capability(name, selector):
            if selector:
                return {"success": True, "element": page.inspect(selector)}
            return {"success": True, "page": page.content()}


__all__ = ["DAEMON_MODULE", "WebSourceBrowser", "daemon_env", "screenshot_filename", "spawn_daemon"]
