"""
Unit tests for the WebSocket transport.

A scripted fake socket stands in for ``websockets`` so no server is
needed: it records what the transport sends and replays frames the test
pushes.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from picologs_runtime.errors import (
    AuthenticationExpiredError,
    ConnectionClosedError,
    RemoteError,
    RequestTimeoutError,
)
from picologs_runtime.transport import ConnectionStatus, Transport
from picologs_runtime.types import ReconnectConfig

from fakes import FakeServer, FakeWebSocket


WS_URL = "ws://localhost:8080/ws"


def make_transport(server: FakeServer, **kwargs: Any) -> tuple[Transport, list[ConnectionStatus], list[dict]]:
    statuses: list[ConnectionStatus] = []
    messages: list[dict] = []

    async def on_status(status: ConnectionStatus) -> None:
        statuses.append(status)

    async def on_message(message: dict) -> None:
        messages.append(message)

    options: dict[str, Any] = {
        "user_id": "user-1",
        "token": "secret token",
        "heartbeat_interval": 0,
        "connect": server.connect,
        "on_status": on_status,
        "on_message": on_message,
    }
    options.update(kwargs)
    return Transport(WS_URL, **options), statuses, messages


async def wait_for_status(transport: Transport, status: ConnectionStatus, timeout: float = 1.0) -> None:
    async def _wait() -> None:
        while transport.status is not status:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_wait(), timeout)


# ============================================================
#  Connect and register
# ============================================================


@pytest.mark.asyncio
async def test_connect_registers() -> None:
    """Connecting sends ``register`` and waits for ``registered``."""
    ws = FakeWebSocket()
    server = FakeServer(ws)
    transport, statuses, _ = make_transport(server)

    await transport.connect()

    assert transport.is_connected
    assert server.urls == [f"{WS_URL}?token=secret%20token"]
    assert ws.sent[0] == {"type": "register", "userId": "user-1", "token": "secret token"}
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    await transport.close()
    assert statuses[-1] is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_registration_error() -> None:
    """A registration error surfaces as RemoteError."""
    ws = FakeWebSocket(register_reply={"type": "error", "message": "Invalid token"})
    transport, _, _ = make_transport(FakeServer(ws))

    with pytest.raises(RemoteError, match="Invalid token"):
        await transport.connect()
    assert transport.status is ConnectionStatus.DISCONNECTED
    assert ws.closed


@pytest.mark.asyncio
async def test_connect_refused() -> None:
    """An unreachable server raises ConnectionClosedError."""
    transport, _, _ = make_transport(FakeServer())
    with pytest.raises(ConnectionClosedError):
        await transport.connect()


@pytest.mark.asyncio
async def test_send_requires_connection() -> None:
    """Sending before connecting fails fast."""
    transport, _, _ = make_transport(FakeServer())
    with pytest.raises(ConnectionClosedError):
        await transport.send({"type": "ping"})


# ============================================================
#  Messages and requests
# ============================================================


@pytest.mark.asyncio
async def test_messages_are_delivered() -> None:
    """Inbound frames reach the message handler; bad frames are dropped."""
    ws = FakeWebSocket()
    transport, _, messages = make_transport(FakeServer(ws))
    await transport.connect()

    ws.push("{not json")
    ws.push([1, 2, 3])
    ws.push({"type": "peer_online", "userId": "peer-1"})
    await asyncio.sleep(0.02)

    assert messages == [{"type": "peer_online", "userId": "peer-1"}]
    await transport.close()


@pytest.mark.asyncio
async def test_deeply_nested_frame_is_dropped() -> None:
    """A frame too deep to decode is dropped and the session keeps listening."""
    ws = FakeWebSocket()
    transport, _, messages = make_transport(FakeServer(ws))
    await transport.connect()

    ws.push("[" * 100_000 + "]" * 100_000)
    ws.push({"type": "peer_online", "userId": "peer-1"})
    await asyncio.sleep(0.02)

    assert messages == [{"type": "peer_online", "userId": "peer-1"}]
    assert transport.is_connected
    await transport.close()


@pytest.mark.asyncio
async def test_ping_is_answered() -> None:
    """Server pings get a pong without reaching the handler."""
    ws = FakeWebSocket()
    transport, _, messages = make_transport(FakeServer(ws))
    await transport.connect()

    ws.push({"type": "ping"})
    await asyncio.sleep(0.02)

    assert ws.sent[-1] == {"type": "pong"}
    assert messages == []
    await transport.close()


@pytest.mark.asyncio
async def test_request_resolves_by_correlation_id() -> None:
    """A reply carrying the correlation id completes the request."""
    ws = FakeWebSocket()
    transport, _, messages = make_transport(FakeServer(ws))
    await transport.connect()

    task = asyncio.create_task(transport.request({"type": "sync_logs", "logs": []}))
    await asyncio.sleep(0.01)
    correlation_id = ws.sent[-1]["correlationId"]
    ws.push({"type": "sync_logs", "correlationId": correlation_id, "logs": []})

    reply = await task
    assert reply["correlationId"] == correlation_id
    assert transport.pending_requests == 0
    assert messages == []
    await transport.close()


@pytest.mark.asyncio
async def test_request_error_reply() -> None:
    """An ``error`` reply raises RemoteError."""
    ws = FakeWebSocket()
    transport, _, _ = make_transport(FakeServer(ws))
    await transport.connect()

    task = asyncio.create_task(transport.request({"type": "sync_logs"}))
    await asyncio.sleep(0.01)
    ws.push({"type": "error", "correlationId": ws.sent[-1]["correlationId"], "message": "Not friends"})

    with pytest.raises(RemoteError, match="Not friends"):
        await task
    await transport.close()


@pytest.mark.asyncio
async def test_request_timeout_releases_entry() -> None:
    """A request without a reply times out and leaves nothing pending."""
    ws = FakeWebSocket()
    transport, _, _ = make_transport(FakeServer(ws), request_timeout=0.05)
    await transport.connect()

    with pytest.raises(RequestTimeoutError):
        await transport.request({"type": "sync_logs"})
    assert transport.pending_requests == 0
    await transport.close()


# ============================================================
#  Disconnects
# ============================================================


@pytest.mark.asyncio
async def test_disconnect_rejects_pending_and_reconnects() -> None:
    """A dropped socket fails in-flight requests, then reconnects."""
    first, second = FakeWebSocket(), FakeWebSocket()
    server = FakeServer(first, second)
    transport, statuses, _ = make_transport(
        server, reconnect=ReconnectConfig(max_retries=3, initial_delay_ms=10, max_delay_ms=50)
    )
    await transport.connect()

    task = asyncio.create_task(transport.request({"type": "sync_logs"}))
    await asyncio.sleep(0.01)
    first.drop(1006)

    with pytest.raises(ConnectionClosedError):
        await task

    await wait_for_status(transport, ConnectionStatus.CONNECTED)
    assert len(server.urls) == 2
    assert second.sent[0]["type"] == "register"
    assert ConnectionStatus.DISCONNECTED in statuses
    await transport.close()


@pytest.mark.asyncio
async def test_policy_violation_expires_auth() -> None:
    """Close code 1008 stops the session without reconnecting."""
    ws = FakeWebSocket()
    server = FakeServer(ws, FakeWebSocket())
    transport, statuses, _ = make_transport(
        server, reconnect=ReconnectConfig(max_retries=3, initial_delay_ms=10, max_delay_ms=50)
    )
    await transport.connect()

    ws.drop(1008)
    await wait_for_status(transport, ConnectionStatus.AUTH_EXPIRED)
    await asyncio.sleep(0.05)

    assert len(server.urls) == 1
    assert statuses[-1] is ConnectionStatus.AUTH_EXPIRED
    with pytest.raises(AuthenticationExpiredError):
        await transport.send({"type": "ping"})
    await transport.close()


@pytest.mark.asyncio
async def test_reconnect_gives_up() -> None:
    """Reconnection stops after ``max_retries`` failed attempts."""
    ws = FakeWebSocket()
    server = FakeServer(ws)
    transport, _, _ = make_transport(
        server, reconnect=ReconnectConfig(max_retries=2, initial_delay_ms=5, max_delay_ms=10)
    )
    await transport.connect()

    ws.drop(1006)
    await asyncio.sleep(0.1)

    assert len(server.urls) == 3
    assert transport.status is ConnectionStatus.DISCONNECTED
    await transport.close()
