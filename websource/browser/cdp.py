"""Raw Chrome DevTools Protocol transport (websocket-client + HTTP discovery)."""

from __future__ import annotations

import json
import socket
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from http.client import HTTPException
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

import websocket

from .errors import CdpError

EVENT_BACKLOG = 2000


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """GET one of the DevTools discovery documents and decode it."""
    request = Request(url, headers={"User-Agent": "websource-browser"})
    try:
        with urlopen(request, timeout=timeout) as response:
            body = response.read()
        return json.loads(body.decode("utf-8"))
    except (URLError, HTTPException, OSError, ValueError) as exc:
        raise CdpError(f"GET {url}: {exc}") from exc


def _event_params(message: dict[str, Any]) -> dict[str, Any]:
    params = message.get("params")
    return params if isinstance(params, dict) else {}


def _is_event(message: dict[str, Any]) -> bool:
    return "id" not in message and isinstance(message.get("method"), str)


class CdpConnection:
    """One websocket to a browser or page target.

    Commands are numbered and answered in-band; events that arrive while a
    caller waits for something else are buffered (oldest dropped first) so a
    later ``wait_for_event`` can still see them.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0):
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout, suppress_origin=True)
        except (websocket.WebSocketException, OSError) as exc:
            raise CdpError(f"CDP connect to {ws_url} failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._ids = iter(range(1, 1 << 31))
        self._events: deque[dict[str, Any]] = deque(maxlen=EVENT_BACKLOG)

    # events

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        for event in self._events:
            if event.get("method") == event_name:
                self._events.remove(event)
                return _event_params(event)
        return None

    def clear_events(self, event_name: str | None = None) -> None:
        if event_name is None:
            self._events.clear()
        else:
            kept = [e for e in self._events if e.get("method") != event_name]
            self._events = deque(kept, maxlen=EVENT_BACKLOG)

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Return the params of the next ``event_name`` event, or None on timeout."""
        buffered = self.pop_event(event_name)
        if buffered is not None:
            return buffered
        found = self._pump(time.monotonic() + timeout, lambda m: _is_event(m) and m["method"] == event_name)
        return None if found is None else _event_params(found)

    # commands

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one command; returns its ``result`` object or raises CdpError."""
        command_id = next(self._ids)
        payload: dict[str, Any] = {"id": command_id, "method": method}
        if params:
            payload["params"] = params
        try:
            self.ws.settimeout(max(0.5, min(2.0, float(self.timeout))))
            self.ws.send(json.dumps(payload))
        except (websocket.WebSocketException, OSError) as exc:
            raise CdpError(f"{method}: {exc}") from exc

        reply = self._pump(time.monotonic() + self.timeout, lambda m: m.get("id") == command_id)
        if reply is None:
            raise CdpError(f"CDP response timed out ({method})")
        if "error" in reply:
            error = reply["error"]
            detail = error.get("message") if isinstance(error, dict) else error
            raise CdpError(f"{method}: {detail}")
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    def _pump(self, deadline: float, match: Callable[[dict[str, Any]], bool]) -> dict[str, Any] | None:
        """Read frames until one satisfies ``match``; other events go to the buffer."""
        while (left := deadline - time.monotonic()) > 0:
            message = self._read_frame(left)
            if message is None:
                continue
            if match(message):
                return message
            if _is_event(message):
                self._events.append(message)
        return None

    def _read_frame(self, left: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, left))
            raw = self.ws.recv()
        except (websocket.WebSocketTimeoutException, socket.timeout):
            return None
        except (websocket.WebSocketException, OSError) as exc:
            raise CdpError(f"CDP receive from {self.ws_url}: {exc}") from exc
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return message if isinstance(message, dict) else None

    # teardown

    def abort(self) -> None:
        """Shut the raw socket down without a websocket close handshake."""
        sock = getattr(self.ws, "sock", None)
        if sock is None:
            return
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        with suppress(OSError):
            sock.close()

    def close(self) -> None:
        # websocket-client's close() waits on the peer and can stall on a wedged browser.
        self.abort()


__all__ = ["CdpConnection", "http_get_json"]
