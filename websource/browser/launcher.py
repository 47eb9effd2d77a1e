from __future__ import annotations

import contextlib
import logging
import shutil
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from .cdp import CdpConnection, http_get_json
from .config import BrowserConfig
from .errors import CdpError

_LOGGER = logging.getLogger("websource.browser.launcher")


@dataclass
class LaunchedBrowser:
    command: list[str]
    debug_port: int
    ws_endpoint: str
    profile_dir: str
    process: subprocess.Popen | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def alive(self) -> bool:
        proc = self.process
        if proc is None:
            return False
        return proc.poll() is None


class BrowserLauncher:
    """Launches an owned Chrome with remote debugging on a free port."""

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig.from_env()

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]

    def build_launch_command(self, *, debug_port: int, profile_dir: str, headless: bool) -> list[str]:
        flags = [
            f"--remote-debugging-port={debug_port}",
            f"--user-data-dir={profile_dir}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-background-timer-throttling",
            "--disable-backgrounding-occluded-windows",
            "--disable-renderer-backgrounding",
        ]
        if headless:
            flags.append("--headless=new")
        return [self.config.binary_path, *flags, *self.config.extra_flags]

    def endpoint_for(self, debug_port: int, timeout: float = 0.8) -> str:
        version = http_get_json(f"http://127.0.0.1:{debug_port}/json/version", timeout=timeout)
        ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
        if not ws_url:
            raise CdpError("CDP browser WebSocket URL not found")
        return str(ws_url)

    def page_url(self, launched: LaunchedBrowser, timeout: float = 1.0) -> str | None:
        """URL of the first page target, read from the CDP target list."""
        targets = http_get_json(f"http://127.0.0.1:{launched.debug_port}/json/list", timeout=timeout)
        for target in targets if isinstance(targets, list) else []:
            if isinstance(target, dict) and target.get("type") == "page":
                return str(target.get("url") or "") or None
        return None

    def launch(self, *, headless: bool = True, log_path: Path | None = None) -> LaunchedBrowser:
        """Start Chrome and wait until its browser endpoint is reachable.

        Raises CdpError if Chrome cannot be spawned or its endpoint does not show
        up within `launch_timeout`; nothing is left running in that case.
        """
        debug_port = self.find_free_port()
        profile_dir = tempfile.mkdtemp(prefix="websource-browser-profile-")
        cmd = self.build_launch_command(debug_port=debug_port, profile_dir=profile_dir, headless=headless)

        log_fh = None
        try:
            if log_path is not None:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_fh = open(log_path, "ab", buffering=0)  # noqa: SIM115
            out = log_fh if log_fh is not None else subprocess.DEVNULL
            process = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=out, stderr=out)
        except OSError as exc:
            shutil.rmtree(profile_dir, ignore_errors=True)
            raise CdpError(f"Failed to launch browser {self.config.binary_path}: {exc}") from exc
        finally:
            if log_fh is not None:
                log_fh.close()

        launched = LaunchedBrowser(
            command=cmd, debug_port=debug_port, ws_endpoint="", profile_dir=profile_dir, process=process
        )
        deadline = time.time() + self.config.launch_timeout
        last_error = "no response"
        while time.time() < deadline:
            if process.poll() is not None:
                last_error = f"browser exited with code {process.returncode}"
                break
            try:
                launched.ws_endpoint = self.endpoint_for(debug_port)
                _LOGGER.info("browser launched pid=%s debug_port=%s", process.pid, debug_port)
                return launched
            except CdpError as exc:
                last_error = str(exc)
            time.sleep(0.2)

        self.stop(launched)
        raise CdpError(f"Failed to get Chrome debugging endpoint: {last_error}")

    def close(self, launched: LaunchedBrowser, *, timeout: float = 2.0) -> None:
        """Ask the browser to exit over CDP, then make sure the process is gone."""
        if launched.ws_endpoint and launched.alive():
            try:
                conn = CdpConnection(launched.ws_endpoint, timeout=timeout)
            except CdpError as exc:
                _LOGGER.debug("browser endpoint unreachable on close: %s", exc)
            else:
                try:
                    conn.send("Browser.close")
                except CdpError as exc:
                    _LOGGER.debug("Browser.close: %s", exc)
                finally:
                    conn.close()
        self.stop(launched, timeout=timeout)

    def stop(self, launched: LaunchedBrowser, *, timeout: float = 2.0) -> None:
        """Stop a launcher-owned Chrome process and remove its temporary profile."""
        proc = launched.process
        if proc is not None and proc.poll() is None:
            with contextlib.suppress(OSError):
                proc.terminate()
            try:
                proc.wait(timeout=max(0.1, float(timeout)))
            except subprocess.TimeoutExpired:
                # Escalate to kill.
                with contextlib.suppress(OSError):
                    proc.kill()
                with contextlib.suppress(subprocess.TimeoutExpired):
                    proc.wait(timeout=timeout)
        shutil.rmtree(launched.profile_dir, ignore_errors=True)


__all__ = ["BrowserLauncher", "LaunchedBrowser"]
