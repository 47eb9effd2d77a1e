"""Session daemon: owns one browser for the lifetime of a named session.

Lifecycle: starting -> running -> shutting_down -> terminated.

- starting: allocate a control port, launch the browser, start the control
  listener, then publish the session record (create-if-absent). Any failure
  releases what was acquired and publishes nothing.
- running: answers ping/status; an idle monitor ticks every `check_interval`
  and shuts the daemon down once `now - last_activity > idle_timeout`, or as
  soon as the owned browser process has exited.
- shutting_down: stop the monitor, close the listener, close the browser,
  delete the record (only if it is still ours).

The daemon is the sole authority over its own teardown, so a crashed or
killed client can never leave it half-cleaned.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Callable
from typing import Any

from .config import BrowserConfig, SessionConfig
from .control import ControlServer, find_available_port
from .errors import CdpError, PersistenceError, SessionAlreadyActiveError
from .launcher import BrowserLauncher, LaunchedBrowser
from .paths import sanitize_session_name, session_log_file
from .session_store import SessionRecord, SessionStore

_LOGGER = logging.getLogger("websource.browser.daemon")


class DaemonState:
    """Lifecycle states of a session daemon."""

    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class SessionDaemon:
    def __init__(
        self,
        session_name: str,
        *,
        headless: bool = True,
        config: SessionConfig | None = None,
        browser_config: BrowserConfig | None = None,
        store: SessionStore | None = None,
        launcher: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_name = sanitize_session_name(session_name)
        self.headless = bool(headless)
        self.config = config or SessionConfig.from_env()
        self.store = store or SessionStore(self.config.sessions_dir)
        self.launcher = launcher or BrowserLauncher(browser_config)
        self.clock = clock
        self.pid = os.getpid()

        self.state = DaemonState.STARTING
        self.last_activity = clock()
        self.control_port: int | None = None
        self.record: SessionRecord | None = None
        self.shutdown_reason: str | None = None

        self._browser: LaunchedBrowser | None = None
        self._control: ControlServer | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._pending_shutdown: str | None = None
        self._stopped = asyncio.Event()

    # ─────────────────────────────────────────────────────────────────────────
    # Activity
    # ─────────────────────────────────────────────────────────────────────────

    def idle_seconds(self, now: float | None = None) -> float:
        return (self.clock() if now is None else now) - self.last_activity

    def time_until_shutdown(self, now: float | None = None) -> float:
        return max(0.0, self.config.idle_timeout - self.idle_seconds(now))

    def update_activity(self) -> None:
        """Refresh the idle clock in memory and in the record (single writer)."""
        self.last_activity = self.clock()
        _LOGGER.debug("Activity updated for session: %s", self.session_name)
        try:
            self.store.touch(self.session_name, owner_pid=self.pid)
        except PersistenceError as exc:
            # The record is a cache of daemon state; a failed write is not fatal.
            _LOGGER.warning("Failed to persist activity for %s: %s", self.session_name, exc)

    def status(self) -> dict[str, Any]:
        return {
            "active": True,
            "lastActivity": int(self.last_activity * 1000),
            "timeUntilShutdown": int(self.time_until_shutdown() * 1000),
        }

    def browser_exited(self) -> bool:
        proc = self._browser.process if self._browser is not None else None
        return proc is not None and proc.poll() is not None

    def check_idle(self, now: float | None = None) -> str | None:
        """One monitor tick: the shutdown reason, or None to keep running."""
        if self.browser_exited():
            _LOGGER.warning("Browser for session '%s' exited, shutting down...", self.session_name)
            return "browser exited"
        idle = self.idle_seconds(now)
        if idle > self.config.idle_timeout:
            _LOGGER.warning(
                "Session '%s' idle for %d minutes, shutting down...", self.session_name, round(idle / 60)
            )
            return "idle timeout"
        _LOGGER.debug(
            "Session '%s' active, %d minutes until timeout",
            self.session_name,
            round(self.time_until_shutdown(now) / 60),
        )
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> SessionRecord:
        """Bring the session up; publishes the record last."""
        _LOGGER.info("Starting session daemon: %s", self.session_name)
        try:
            port = find_available_port(self.config.control_port)
            self._browser = await asyncio.to_thread(
                self.launcher.launch,
                headless=self.headless,
                log_path=session_log_file(self.config.logs_dir, f"{self.session_name}-browser"),
            )
            self._control = ControlServer(
                on_ping=self.update_activity,
                status=self.status,
                request_timeout=self.config.control_timeout,
            )
            self.control_port = await self._control.start(port)
            self.last_activity = self.clock()
            self.record = self.store.create(
                self.session_name,
                self._browser.ws_endpoint,
                self.pid,
                control_port=self.control_port,
                debug_port=self._browser.debug_port,
                headless=self.headless,
            )
        except SessionAlreadyActiveError:
            _LOGGER.error("Session '%s' was started by another daemon", self.session_name)
            await self._release()
            self.state = DaemonState.TERMINATED
            self._stopped.set()
            raise
        except Exception:
            await self._release()
            self.state = DaemonState.TERMINATED
            self._stopped.set()
            raise

        self.state = DaemonState.RUNNING
        self._monitor_task = asyncio.create_task(self._monitor())
        _LOGGER.info(
            "Session daemon '%s' started successfully (control port %s, debug port %s)",
            self.session_name,
            self.control_port,
            self._browser.debug_port,
        )
        if self._pending_shutdown:
            self.request_shutdown(self._pending_shutdown)
        return self.record

    async def _monitor(self) -> None:
        while self.state == DaemonState.RUNNING:
            await asyncio.sleep(self.config.check_interval)
            try:
                reason = self.check_idle()
                if reason:
                    self.request_shutdown(reason)
                    return
                await self.refresh_current_url()
            except Exception:
                # A failed tick must not end idle supervision.
                _LOGGER.exception("Monitor tick failed for session '%s'", self.session_name)

    async def refresh_current_url(self) -> None:
        """Keep the record's currentUrl cache in step with the browser."""
        browser = self._browser
        if browser is None:
            return
        try:
            url = await asyncio.to_thread(self.launcher.page_url, browser)
        except CdpError as exc:
            _LOGGER.debug("Could not read current URL for %s: %s", self.session_name, exc)
            return
        if not url or (self.record is not None and url == self.record.current_url):
            return
        try:
            self.store.update(self.session_name, owner_pid=self.pid, current_url=url)
        except PersistenceError as exc:
            _LOGGER.warning("Failed to persist current URL for %s: %s", self.session_name, exc)
            return
        if self.record is not None:
            self.record.current_url = url

    def request_shutdown(self, reason: str = "requested") -> None:
        """Schedule shutdown from a signal handler, the monitor or a caller."""
        if self.state == DaemonState.STARTING:
            self._pending_shutdown = reason
            return
        if self.state != DaemonState.RUNNING or self._shutdown_task is not None:
            return
        self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown(reason))

    async def shutdown(self, reason: str = "requested") -> None:
        if self.state in (DaemonState.SHUTTING_DOWN, DaemonState.TERMINATED):
            await self._stopped.wait()
            return
        self.state = DaemonState.SHUTTING_DOWN
        self.shutdown_reason = reason
        _LOGGER.info("Shutting down session daemon: %s (%s)", self.session_name, reason)

        await self._release()
        try:
            self.store.delete(self.session_name, owner_pid=self.pid)
        except PersistenceError as exc:
            _LOGGER.error("Failed to delete session record %s: %s", self.session_name, exc)

        self.state = DaemonState.TERMINATED
        self._stopped.set()
        _LOGGER.info("Session daemon '%s' shut down", self.session_name)

    async def _release(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        control = self._control
        self._control = None
        if control is not None:
            await control.close()

        browser = self._browser
        self._browser = None
        if browser is not None:
            try:
                await asyncio.to_thread(self.launcher.close, browser)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("Error closing browser: %s", exc)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self) -> int:
        """Run until shutdown; returns the process exit code."""
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}")
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not available on this platform or outside the main thread.
                continue
        try:
            try:
                await self.start()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.error("Failed to start session daemon '%s': %s", self.session_name, exc)
                return 1
            await self._stopped.wait()
            return 0
        finally:
            for sig in installed:
                with contextlib.suppress(Exception):
                    loop.remove_signal_handler(sig)


__all__ = ["DaemonState", "SessionDaemon"]
