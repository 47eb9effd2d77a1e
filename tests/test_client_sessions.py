from __future__ import annotations

import asyncio
import os
import socket
import threading
from pathlib import Path
from typing import Any

import pytest

from websource.browser import client as client_mod
from websource.browser.client import WebSourceBrowser
from websource.browser.config import BrowserConfig, SessionConfig
from websource.browser.control import ControlServer
from websource.browser.errors import (
    SessionAlreadyActiveError,
    SessionNotFoundError,
    SessionStaleError,
    SessionStartTimeoutError,
)
from websource.browser.session_store import SessionStore

DEAD_ENDPOINT = "ws://127.0.0.1:1/devtools/browser/gone"


def _dead_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class LiveControl:
    """A real control listener on a background event loop, standing in for a daemon."""

    def __init__(self) -> None:
        self.pings = 0
        self.loop = asyncio.new_event_loop()
        self.server = ControlServer(
            on_ping=self._on_ping,
            status=lambda: {"active": True, "lastActivity": 1, "timeUntilShutdown": 900_000},
        )
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.port = 0

    def _on_ping(self) -> None:
        self.pings += 1

    def __enter__(self) -> LiveControl:
        self.thread.start()
        self.port = asyncio.run_coroutine_threadsafe(self.server.start(0), self.loop).result(5)
        return self

    def __exit__(self, *exc: object) -> None:
        asyncio.run_coroutine_threadsafe(self.server.close(), self.loop).result(5)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)
        self.loop.close()


class FakeProc:
    def __init__(self, pid: int = 5150, returncode: int | None = None) -> None:
        self.pid = pid
        self.returncode = returncode
        self.terminated = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True


def _browser(
    tmp_path: Path,
    *,
    active: bool = False,
    spawn: Any = None,
    sleep: Any = None,
    attempts: int = 5,
) -> WebSourceBrowser:
    config = SessionConfig(state_dir=tmp_path, start_attempts=attempts, start_poll_interval=0.0, control_timeout=1.0)
    store = SessionStore(
        config.sessions_dir,
        probe=lambda *_: active,
        control_probe=lambda *_: active,
        probe_timeout=0.5,
    )
    return WebSourceBrowser(
        config=config,
        browser_config=BrowserConfig(binary_path="/bin/true"),
        store=store,
        spawn=spawn or (lambda _name, _headless: pytest.fail("unexpected spawn")),
        sleep=sleep or (lambda _seconds: None),
    )


def test_connect_without_record_is_not_found(tmp_path: Path) -> None:
    browser = _browser(tmp_path)
    with pytest.raises(SessionNotFoundError) as excinfo:
        browser.connect_to_session("s1")
    assert "--start" in str(excinfo.value)


def test_connect_to_dead_daemon_is_stale_and_self_heals(tmp_path: Path) -> None:
    browser = _browser(tmp_path)
    browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=_dead_port())

    with pytest.raises(SessionStaleError):
        browser.connect_to_session("s1")
    assert browser.store.exists("s1") is False

    # Second attempt: the record is gone, so the failure is diagnosable as absent.
    with pytest.raises(SessionNotFoundError):
        browser.connect_to_session("s1")


def test_connect_to_live_daemon_but_dead_browser_is_stale(tmp_path: Path) -> None:
    browser = _browser(tmp_path)
    with LiveControl() as live:
        browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=live.port)
        with pytest.raises(SessionStaleError):
            browser.connect_to_session("s1")
        assert live.pings == 1
    assert browser.store.exists("s1") is False


def test_connect_attaches_and_reuses_within_invocation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    connects: list[str] = []

    class FakePage:
        def get_url(self) -> str:
            return "https://example.com/"

        def close(self) -> None:
            pass

    class FakeHandle:
        @classmethod
        def connect(cls, endpoint: str, **_kwargs: Any) -> FakeHandle:
            connects.append(endpoint)
            return cls()

        def attach_or_create_page(self) -> FakePage:
            return FakePage()

        def disconnect(self) -> None:
            pass

    monkeypatch.setattr(client_mod, "BrowserHandle", FakeHandle)
    browser = _browser(tmp_path)
    with LiveControl() as live:
        record = browser.store.create("s1", "ws://127.0.0.1:9/devtools/browser/x", 4242, control_port=live.port)
        assert browser.connect_to_session("s1") == record
        assert browser.connect_to_session("s1") == record
        assert live.pings == 1
    assert connects == ["ws://127.0.0.1:9/devtools/browser/x"]
    assert browser.current_url == "https://example.com/"


def test_start_against_active_session_spawns_nothing(tmp_path: Path) -> None:
    browser = _browser(tmp_path, active=True)
    browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=9320)

    with pytest.raises(SessionAlreadyActiveError):
        browser.start_session("s1")
    assert browser.store.get("s1").pid == 4242


def test_start_replaces_stale_record_and_waits_for_daemon(tmp_path: Path) -> None:
    spawned: list[tuple[str, bool]] = []
    proc = FakeProc(pid=777)
    polls: list[int] = []

    def _spawn(name: str, headless: bool) -> FakeProc:
        spawned.append((name, headless))
        return proc

    browser: WebSourceBrowser

    def _sleep(_seconds: float) -> None:
        polls.append(1)
        if len(polls) == 3:
            # The daemon publishes its record once browser and listener are up.
            browser.store.create("s1", "ws://127.0.0.1:9/devtools/browser/new", proc.pid, control_port=9321)

    browser = _browser(tmp_path, spawn=_spawn, sleep=_sleep)
    browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=_dead_port())

    result = browser.start_session("s1", headless=False)
    assert result == {"success": True, "sessionName": "s1", "pid": 777, "controlPort": 9321}
    assert spawned == [("s1", False)]
    assert len(polls) == 3


def test_start_lost_to_another_daemon_is_already_active(tmp_path: Path) -> None:
    browser: WebSourceBrowser

    def _sleep(_seconds: float) -> None:
        if not browser.store.exists("s1"):
            browser.store.create("s1", DEAD_ENDPOINT, 999, control_port=9321)

    browser = _browser(tmp_path, spawn=lambda *_: FakeProc(pid=777), sleep=_sleep)
    with pytest.raises(SessionAlreadyActiveError):
        browser.start_session("s1")


def test_start_reports_daemon_exit_as_start_timeout(tmp_path: Path) -> None:
    browser = _browser(tmp_path, spawn=lambda *_: FakeProc(returncode=1))
    with pytest.raises(SessionStartTimeoutError) as excinfo:
        browser.start_session("s1")
    assert "exited with code 1" in excinfo.value.reason
    assert browser.store.exists("s1") is False


def test_start_gives_up_after_poll_bound(tmp_path: Path) -> None:
    proc = FakeProc()
    polls: list[float] = []
    browser = _browser(tmp_path, spawn=lambda *_: proc, sleep=polls.append, attempts=4)

    with pytest.raises(SessionStartTimeoutError):
        browser.start_session("s1")
    assert len(polls) == 4
    assert proc.terminated is True


def test_start_is_refused_while_another_start_holds_the_lock(tmp_path: Path) -> None:
    from websource.browser.start_lock import session_start_lock

    browser = _browser(tmp_path, attempts=1)
    browser.config.control_timeout = 0.1
    holder = session_start_lock(browser.config.locks_dir, "s1")
    assert holder.try_acquire()
    try:
        with pytest.raises(SessionAlreadyActiveError):
            browser.start_session("s1")
    finally:
        holder.release()


def test_ping_stop_ping_lifecycle(tmp_path: Path) -> None:
    browser = _browser(tmp_path)
    with LiveControl() as live:
        browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=live.port)

        assert browser.ping_session("s1") == {"success": True, "sessionName": "s1", "reply": "pong"}
        status = browser.session_status("s1")
        assert status["active"] is True
        assert status["timeUntilShutdown"] == 900_000

        assert browser.stop_session("s1") == {"success": True, "sessionName": "s1"}
        assert browser.store.exists("s1") is False
        with pytest.raises(SessionNotFoundError):
            browser.ping_session("s1")


def test_ping_dead_daemon_is_stale(tmp_path: Path) -> None:
    browser = _browser(tmp_path)
    browser.store.create("s1", DEAD_ENDPOINT, 4242, control_port=_dead_port())
    with pytest.raises(SessionStaleError):
        browser.session_status("s1")
    assert browser.store.exists("s1") is False


def test_stop_unknown_session_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(SessionNotFoundError):
        _browser(tmp_path).stop_session("nope")


def test_list_sessions_adds_active_flag(tmp_path: Path) -> None:
    browser = _browser(tmp_path, active=True)
    browser.store.create("a", DEAD_ENDPOINT, 1, control_port=9320)
    browser.store.create("b", DEAD_ENDPOINT, 2, control_port=9321)

    sessions = sorted(browser.list_sessions(), key=lambda s: s["name"])
    assert [s["name"] for s in sessions] == ["a", "b"]
    assert all(s["active"] is True for s in sessions)
    assert sessions[0]["wsEndpoint"] == DEAD_ENDPOINT
    # Listing is read-only.
    assert browser.store.exists("a") and browser.store.exists("b")


def test_spawn_daemon_passes_parameters_through_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def _popen(cmd: list[str], **kwargs: Any) -> FakeProc:
        seen["cmd"] = cmd
        seen.update(kwargs)
        return FakeProc()

    monkeypatch.setattr(client_mod.subprocess, "Popen", _popen)
    client_mod.spawn_daemon("work", False)

    assert seen["cmd"][1:] == ["-m", "websource.browser.main"]
    assert "work" not in seen["cmd"][1:]
    assert seen["env"]["WEBSOURCE_BROWSER_DAEMON"] == "true"
    assert seen["env"]["WEBSOURCE_BROWSER_SESSION_NAME"] == "work"
    assert seen["env"]["WEBSOURCE_BROWSER_HEADLESS"] == "false"
    assert seen["start_new_session"] is True


def test_daemon_env_puts_package_root_on_pythonpath(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    env = client_mod.daemon_env("s1", True, base={"PYTHONPATH": "rel"})
    parts = env["PYTHONPATH"].split(os.pathsep)
    assert parts == [str(client_mod.PACKAGE_ROOT), str(tmp_path.resolve() / "rel")]
    assert (client_mod.PACKAGE_ROOT / "websource" / "browser" / "main.py").is_file()

    again = client_mod.daemon_env("s1", True, base={"PYTHONPATH": str(client_mod.PACKAGE_ROOT)})
    assert again["PYTHONPATH"] == str(client_mod.PACKAGE_ROOT)


def test_spawned_daemon_imports_from_any_working_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    state = tmp_path / "state"
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PYTHONPATH", raising=False)
    monkeypatch.delenv("WEBSOURCE_BROWSER_SESSIONS_DIR", raising=False)
    monkeypatch.setenv("WEBSOURCE_BROWSER_HOME", str(state))
    # No browser: the daemon gets as far as launching, logs the failure and exits 1.
    monkeypatch.setenv("WEBSOURCE_BROWSER_BINARY", str(tmp_path / "no-such-chrome"))

    proc = client_mod.spawn_daemon("s1", True)
    assert proc.wait(timeout=60) == 1

    log_text = (state / "logs" / "s1.log").read_text(encoding="utf-8")
    assert "Failed to start session daemon 's1'" in log_text
    assert not (state / "sessions" / "s1.json").exists()
