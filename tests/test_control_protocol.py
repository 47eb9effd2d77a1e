from __future__ import annotations

import asyncio
import socket
from typing import Any

import pytest

from websource.browser import control
from websource.browser.control import ControlServer, find_available_port, send_request
from websource.browser.errors import ControlChannelError, ControlTimeoutError


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _server(pings: list[int], status: dict[str, Any] | None = None, **kwargs: Any) -> ControlServer:
    return ControlServer(
        on_ping=lambda: pings.append(1),
        status=lambda: status or {"active": True, "lastActivity": 1000, "timeUntilShutdown": 5000},
        **kwargs,
    )


def test_handle_request_answers_ping_and_status_only() -> None:
    pings: list[int] = []
    server = _server(pings)

    assert server.handle_request("ping\n") == "pong"
    assert pings == [1]
    assert server.handle_request("  status \r\n") == '{"active":true,"lastActivity":1000,"timeUntilShutdown":5000}'
    assert server.handle_request("shutdown\n") is None
    assert server.handle_request("") is None
    assert pings == [1]


def test_ping_and_status_over_tcp() -> None:
    pings: list[int] = []

    async def _main() -> tuple[str, dict[str, Any], str]:
        server = _server(pings)
        port = await server.start(0)
        try:
            assert server.serving
            reply = await asyncio.to_thread(send_request, port, "ping", timeout=2.0)
            status = await asyncio.to_thread(control.status, port, timeout=2.0)
            silent = await asyncio.to_thread(send_request, port, "hello", timeout=2.0)
            await asyncio.to_thread(control.ping, port, timeout=2.0)
        finally:
            await server.close()
        assert not server.serving
        return reply, status, silent

    reply, status, silent = asyncio.run(_main())
    assert reply == "pong"
    assert status == {"active": True, "lastActivity": 1000, "timeUntilShutdown": 5000}
    # Unknown requests draw no response; the connection is just closed.
    assert silent == ""
    assert len(pings) == 2


def test_unrecognised_reply_fails_ping() -> None:
    async def _main() -> None:
        server = ControlServer(on_ping=lambda: None, status=lambda: {})
        server.handle_request = lambda _message: "nope"  # type: ignore[method-assign]
        port = await server.start(0)
        try:
            with pytest.raises(ControlChannelError):
                await asyncio.to_thread(control.ping, port, timeout=2.0)
            with pytest.raises(ControlChannelError):
                await asyncio.to_thread(control.status, port, timeout=2.0)
        finally:
            await server.close()

    asyncio.run(_main())


def test_refused_connection_is_a_control_channel_error() -> None:
    port = _free_port()
    with pytest.raises(ControlChannelError) as excinfo:
        control.ping(port, timeout=1.0)
    assert not isinstance(excinfo.value, ControlTimeoutError)


def test_silent_daemon_times_out() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    try:
        # Accepted by the kernel backlog but never answered.
        with pytest.raises(ControlTimeoutError):
            send_request(port, "ping", timeout=0.3)
    finally:
        listener.close()


def test_server_closes_idle_connections() -> None:
    async def _main() -> bytes:
        server = ControlServer(on_ping=lambda: None, status=lambda: {}, request_timeout=0.2)
        port = await server.start(0)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            data = await asyncio.wait_for(reader.read(), timeout=2.0)
            writer.close()
            return data
        finally:
            await server.close()

    assert asyncio.run(_main()) == b""


def test_start_falls_back_to_any_port_when_preferred_is_taken() -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    taken = blocker.getsockname()[1]

    async def _main() -> int:
        server = ControlServer(on_ping=lambda: None, status=lambda: {})
        port = await server.start(taken)
        await server.close()
        return port

    try:
        port = asyncio.run(_main())
    finally:
        blocker.close()
    assert port != taken
    assert port > 0


def test_find_available_port_prefers_requested_port() -> None:
    preferred = _free_port()
    assert find_available_port(preferred) == preferred

    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", preferred))
    blocker.listen(1)
    try:
        assert find_available_port(preferred) != preferred
    finally:
        blocker.close()
