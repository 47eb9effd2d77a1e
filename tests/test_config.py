from __future__ import annotations

import os
from pathlib import Path

import pytest

from websource.browser.config import (
    DAEMON_ENV,
    HEADLESS_ENV,
    SESSION_NAME_ENV,
    BrowserConfig,
    DaemonSpawnEnv,
    SessionConfig,
    env_flag,
)


def test_env_flag_parses_common_spellings() -> None:
    assert env_flag("true") is True
    assert env_flag(" YES ") is True
    assert env_flag("0") is False
    assert env_flag("off", default=True) is False
    assert env_flag(None, default=True) is True
    assert env_flag("maybe") is False


def test_session_config_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in [k for k in os.environ if k.startswith("WEBSOURCE_BROWSER_")] + ["DEBUG"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WEBSOURCE_BROWSER_HOME", str(tmp_path))

    cfg = SessionConfig.from_env()
    assert cfg.idle_timeout == 15 * 60
    assert cfg.check_interval == 60
    assert cfg.control_port == 9320
    assert cfg.control_timeout == 5
    assert cfg.start_attempts == 60
    assert cfg.debug is False
    assert cfg.sessions_dir == tmp_path / "sessions"
    assert cfg.logs_dir == tmp_path / "logs"
    assert cfg.locks_dir == tmp_path / "locks"


def test_session_config_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WEBSOURCE_BROWSER_HOME", str(tmp_path))
    monkeypatch.setenv("WEBSOURCE_BROWSER_SESSIONS_DIR", str(tmp_path / "elsewhere"))
    monkeypatch.setenv("WEBSOURCE_BROWSER_IDLE_TIMEOUT", "30")
    monkeypatch.setenv("WEBSOURCE_BROWSER_CONTROL_PORT", "9400")
    monkeypatch.setenv("DEBUG", "true")

    cfg = SessionConfig.from_env()
    assert cfg.idle_timeout == 30
    assert cfg.control_port == 9400
    assert cfg.debug is True
    assert cfg.sessions_dir == tmp_path / "elsewhere"


def test_browser_config_binary_and_flags_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WEBSOURCE_BROWSER_LAUNCH_TIMEOUT", raising=False)
    monkeypatch.setenv("WEBSOURCE_BROWSER_BINARY", "/opt/chrome/chrome")
    monkeypatch.setenv("WEBSOURCE_BROWSER_FLAGS", "--lang=en, --mute-audio,,")
    cfg = BrowserConfig.from_env()
    assert cfg.binary_path == "/opt/chrome/chrome"
    assert cfg.extra_flags == ["--lang=en", "--mute-audio"]
    assert cfg.launch_timeout == 15


def test_daemon_spawn_env_round_trips_through_environment() -> None:
    env = DaemonSpawnEnv(session_name="work", headless=False).to_env({"PATH": "/bin"})
    assert env["PATH"] == "/bin"
    assert env[DAEMON_ENV] == "true"
    assert env[SESSION_NAME_ENV] == "work"
    assert env[HEADLESS_ENV] == "false"

    assert DaemonSpawnEnv.is_daemon(env) is True
    assert DaemonSpawnEnv.is_daemon({}) is False
    assert DaemonSpawnEnv.from_env(env) == DaemonSpawnEnv(session_name="work", headless=False)
    assert DaemonSpawnEnv.from_env({}) == DaemonSpawnEnv(session_name="default", headless=True)
