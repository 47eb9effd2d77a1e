"""Line-based control channel between clients and a session daemon.

Wire format (newline-terminated ASCII, one request per connection):
- ``ping``   -> ``pong``  (refreshes the daemon's activity clock)
- ``status`` -> ``{"active": true, "lastActivity": <ms>, "timeUntilShutdown": <ms>}``
- anything else draws no response; the connection is closed.

The channel never proxies browser commands: clients talk to Chrome directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
import time
from collections.abc import Callable
from typing import Any

from .errors import ControlChannelError, ControlTimeoutError

_LOGGER = logging.getLogger("websource.browser.control")

CONTROL_HOST = "127.0.0.1"
PING = "ping"
PONG = "pong"
STATUS = "status"

_MAX_LINE_BYTES = 4096


def find_available_port(preferred: int | None = None, host: str = CONTROL_HOST) -> int:
    """Return `preferred` if it can be bound right now, else any free port."""
    if preferred:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            try:
                s.bind((host, int(preferred)))
                return int(s.getsockname()[1])
            except OSError:
                pass
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


class ControlServer:
    """asyncio TCP listener answering ping/status, one request per connection."""

    def __init__(
        self,
        *,
        on_ping: Callable[[], None],
        status: Callable[[], dict[str, Any]],
        host: str = CONTROL_HOST,
        request_timeout: float = 5.0,
    ) -> None:
        self._on_ping = on_ping
        self._status = status
        self.host = host
        self.request_timeout = float(request_timeout)
        self._server: asyncio.Server | None = None
        self.port: int | None = None

    async def start(self, port: int) -> int:
        try:
            server = await asyncio.start_server(self._handle_connection, self.host, int(port))
        except OSError as exc:
            # The allocated port was taken between allocation and bind.
            _LOGGER.warning("control port %s unavailable (%s); binding any free port", port, exc)
            server = await asyncio.start_server(self._handle_connection, self.host, 0)
        self._server = server
        self.port = int(server.sockets[0].getsockname()[1])
        return self.port

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def close(self) -> None:
        server = self._server
        self._server = None
        if server is None:
            return
        server.close()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(server.wait_closed(), timeout=2.0)

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                raw = await asyncio.wait_for(reader.readline(), timeout=self.request_timeout)
            except (asyncio.TimeoutError, asyncio.LimitOverrunError, ValueError, ConnectionError):
                return
            if len(raw) > _MAX_LINE_BYTES:
                return
            reply = self.handle_request(raw.decode("ascii", errors="replace"))
            if reply is None:
                return
            writer.write((reply + "\n").encode("ascii"))
            with contextlib.suppress(ConnectionError):
                await writer.drain()
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def handle_request(self, message: str) -> str | None:
        request = message.strip()
        if request == PING:
            self._on_ping()
            return PONG
        if request == STATUS:
            return json.dumps(self._status(), separators=(",", ":"))
        _LOGGER.debug("ignoring control request %r", request[:64])
        return None


def send_request(port: int, request: str, *, host: str = CONTROL_HOST, timeout: float = 5.0) -> str:
    """Send one request and return the response line ('' if the daemon stayed silent)."""
    deadline = time.monotonic() + max(0.05, float(timeout))
    try:
        with socket.create_connection((host, int(port)), timeout=timeout) as sock:
            sock.sendall((request.strip() + "\n").encode("ascii"))
            buf = bytearray()
            while b"\n" not in buf and len(buf) <= _MAX_LINE_BYTES:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("control response timed out")
                sock.settimeout(remaining)
                chunk = sock.recv(1024)
                if not chunk:
                    break
                buf.extend(chunk)
    except TimeoutError as exc:
        raise ControlTimeoutError(
            f"No response to '{request}' on control port {port} within {timeout:g}s"
        ) from exc
    except OSError as exc:
        raise ControlChannelError(f"Control port {port} unreachable: {exc}") from exc
    return bytes(buf).split(b"\n", 1)[0].decode("ascii", errors="replace").strip()


def ping(port: int, *, host: str = CONTROL_HOST, timeout: float = 5.0) -> None:
    reply = send_request(port, PING, host=host, timeout=timeout)
    if reply != PONG:
        raise ControlChannelError(f"Unexpected ping reply on control port {port}: {reply!r}")


def status(port: int, *, host: str = CONTROL_HOST, timeout: float = 5.0) -> dict[str, Any]:
    reply = send_request(port, STATUS, host=host, timeout=timeout)
    try:
        data = json.loads(reply)
    except json.JSONDecodeError as exc:
        raise ControlChannelError(f"Malformed status reply on control port {port}: {reply!r}") from exc
    if not isinstance(data, dict):
        raise ControlChannelError(f"Malformed status reply on control port {port}: {reply!r}")
    return data


__all__ = [
    "CONTROL_HOST",
    "ControlServer",
    "PING",
    "PONG",
    "STATUS",
    "find_available_port",
    "ping",
    "send_request",
    "status",
]
