from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium for better compatibility.
    # IMPORTANT: Avoid snap versions - they ignore --user-data-dir!
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome-beta",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]

DAEMON_ENV = "WEBSOURCE_BROWSER_DAEMON"
SESSION_NAME_ENV = "WEBSOURCE_BROWSER_SESSION_NAME"
HEADLESS_ENV = "WEBSOURCE_BROWSER_HEADLESS"

DEFAULT_SESSION = "default"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def env_flag(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class BrowserConfig:
    binary_path: str
    extra_flags: list[str] = field(default_factory=list)
    launch_timeout: float = 15.0
    cdp_timeout: float = 30.0

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("WEBSOURCE_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        for name in ("chromium", "chromium-browser", "google-chrome", "google-chrome-stable"):
            found = shutil.which(name)
            if found:
                return found
        # Last resort: rely on PATH lookup at spawn time
        return "google-chrome"

    @classmethod
    def from_env(cls) -> BrowserConfig:
        flags_raw = os.environ.get("WEBSOURCE_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        return cls(
            binary_path=cls.detect_binary(),
            extra_flags=extra_flags,
            launch_timeout=_env_float("WEBSOURCE_BROWSER_LAUNCH_TIMEOUT", 15.0),
            cdp_timeout=_env_float("WEBSOURCE_BROWSER_CDP_TIMEOUT", 30.0),
        )


@dataclass
class SessionConfig:
    """Where session state lives and how long daemons stay around."""

    state_dir: Path
    idle_timeout: float = 15 * 60.0
    check_interval: float = 60.0
    control_port: int = 9320
    control_timeout: float = 5.0
    start_attempts: int = 60
    start_poll_interval: float = 1.0
    debug: bool = False

    @property
    def sessions_dir(self) -> Path:
        raw = os.environ.get("WEBSOURCE_BROWSER_SESSIONS_DIR")
        if isinstance(raw, str) and raw.strip():
            return Path(raw.strip()).expanduser()
        return self.state_dir / "sessions"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @classmethod
    def from_env(cls) -> SessionConfig:
        home = os.environ.get("WEBSOURCE_BROWSER_HOME", "~/.local/lib/websource-browser")
        return cls(
            state_dir=Path(expand_path(home)),
            idle_timeout=_env_float("WEBSOURCE_BROWSER_IDLE_TIMEOUT", 15 * 60.0),
            check_interval=_env_float("WEBSOURCE_BROWSER_CHECK_INTERVAL", 60.0),
            control_port=_env_int("WEBSOURCE_BROWSER_CONTROL_PORT", 9320),
            control_timeout=_env_float("WEBSOURCE_BROWSER_CONTROL_TIMEOUT", 5.0),
            start_attempts=_env_int("WEBSOURCE_BROWSER_START_ATTEMPTS", 60),
            start_poll_interval=_env_float("WEBSOURCE_BROWSER_START_POLL_INTERVAL", 1.0),
            debug=env_flag(os.environ.get("DEBUG")),
        )


@dataclass(frozen=True)
class DaemonSpawnEnv:
    """Daemon launch parameters passed through the environment, not argv."""

    session_name: str
    headless: bool = True

    def to_env(self, base: dict[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env[DAEMON_ENV] = "true"
        env[SESSION_NAME_ENV] = self.session_name
        env[HEADLESS_ENV] = "true" if self.headless else "false"
        return env

    @staticmethod
    def is_daemon(env: dict[str, str] | None = None) -> bool:
        source = os.environ if env is None else env
        return env_flag(source.get(DAEMON_ENV))

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> DaemonSpawnEnv:
        source = os.environ if env is None else env
        name = (source.get(SESSION_NAME_ENV) or "").strip() or DEFAULT_SESSION
        return cls(session_name=name, headless=env_flag(source.get(HEADLESS_ENV), default=True))
