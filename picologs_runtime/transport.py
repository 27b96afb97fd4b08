"""
WebSocket session with the Picologs server.

One ``Transport`` owns one logical session: it opens the socket, registers,
keeps it alive with pings, correlates request/response pairs, and reconnects
with bounded exponential backoff. A close with code 1008 means the token is
no longer accepted; the session stops and reports ``auth_expired``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import quote as url_quote

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from picologs_runtime.errors import (
    AuthenticationExpiredError,
    ConnectionClosedError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from picologs_runtime.types import ReconnectConfig

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTH_EXPIRED = "auth_expired"


ConnectFn = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
StatusHandler = Callable[[ConnectionStatus], Awaitable[None]]


class Transport:
    """A reconnecting, correlating WebSocket session."""

    def __init__(
        self,
        url: str,
        *,
        user_id: str,
        token: str | None = None,
        request_timeout: float = 30.0,
        send_timeout: float = 5.0,
        connect_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        reconnect: ReconnectConfig | None = None,
        connect: ConnectFn | None = None,
        on_message: MessageHandler | None = None,
        on_status: StatusHandler | None = None,
    ) -> None:
        self._url = url
        self._user_id = user_id
        self._token = token
        self._request_timeout = request_timeout
        self._send_timeout = send_timeout
        self._connect_timeout = connect_timeout
        self._heartbeat_interval = heartbeat_interval
        self._reconnect = reconnect or ReconnectConfig()
        self._connect = connect or websockets.connect
        self._on_message = on_message
        self._on_status = on_status

        self._ws: Any | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._listen_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """Open the socket and register.

        Raises:
            RequestTimeoutError: If the socket or registration timed out.
            ConnectionClosedError: If the socket could not be opened.
            AuthenticationExpiredError: If the server rejected the token.
            RemoteError: If the server answered registration with an error.
        """
        self._closing = False
        await self._open()

    async def close(self) -> None:
        """Close the session for good; no reconnect follows."""
        self._closing = True
        for task in (self._reconnect_task, self._heartbeat_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._heartbeat_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError):
                logger.debug("Error while closing WebSocket", exc_info=True)

        if self._listen_task is not None and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None

        self._reject_pending(ConnectionClosedError("Connection closed"))
        if self._status is not ConnectionStatus.AUTH_EXPIRED:
            await self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("Disconnected from %s", self._url)

    async def send(self, message: dict[str, Any]) -> None:
        """Send one message, bounded by the send timeout.

        Raises:
            AuthenticationExpiredError: If the session ended with 1008.
            ConnectionClosedError: If there is no open connection.
            RequestTimeoutError: If the send did not complete in time.
        """
        if self._status is ConnectionStatus.AUTH_EXPIRED:
            raise AuthenticationExpiredError("Authentication expired; reconnect with a new token")
        if self._ws is None or self._status is not ConnectionStatus.CONNECTED:
            raise ConnectionClosedError("Not connected")
        await self._send_on(self._ws, message)

    async def request(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send a message and wait for the reply carrying its correlation id.

        Raises:
            RequestTimeoutError: If no reply arrived within the request timeout.
            ConnectionClosedError: If the connection closed first.
            RemoteError: If the server replied with an ``error`` message.
        """
        correlation_id = str(uuid.uuid4())
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        try:
            await self.send({**message, "correlationId": correlation_id})
            return await asyncio.wait_for(future, self._request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"No reply to {message.get('type')} within {self._request_timeout:.0f}s"
            ) from None
        finally:
            self._pending.pop(correlation_id, None)

    # ---- Internal ----

    def _build_url(self) -> str:
        if not self._token:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}token={url_quote(self._token, safe='')}"

    async def _open(self) -> None:
        await self._set_status(ConnectionStatus.CONNECTING)
        try:
            ws = await asyncio.wait_for(self._connect(self._build_url()), self._connect_timeout)
        except asyncio.TimeoutError:
            await self._set_status(ConnectionStatus.DISCONNECTED)
            raise RequestTimeoutError(f"Connecting to {self._url} timed out") from None
        except (WebSocketException, OSError) as exc:
            await self._set_status(ConnectionStatus.DISCONNECTED)
            raise ConnectionClosedError(f"Could not connect to {self._url}: {exc}") from exc

        try:
            await self._register(ws)
        except BaseException:
            try:
                await ws.close()
            except (WebSocketException, OSError):
                logger.debug("Error while closing WebSocket", exc_info=True)
            if self._status is not ConnectionStatus.AUTH_EXPIRED:
                await self._set_status(ConnectionStatus.DISCONNECTED)
            raise

        self._ws = ws
        self._listen_task = asyncio.create_task(self._listen(ws))
        if self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        await self._set_status(ConnectionStatus.CONNECTED)
        logger.info("Connected to %s as %s", self._url, self._user_id)

    async def _register(self, ws: Any) -> None:
        register: dict[str, Any] = {"type": "register", "userId": self._user_id}
        if self._token:
            register["token"] = self._token
        await self._send_on(ws, register)
        try:
            await asyncio.wait_for(self._await_registration(ws), self._connect_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError("Registration timed out") from None

    async def _await_registration(self, ws: Any) -> None:
        try:
            async for raw in ws:
                message = self._decode(raw)
                if message is None:
                    continue
                if message.get("type") == "registered":
                    return
                if message.get("type") == "error":
                    raise RemoteError(str(message.get("message", "Registration failed")))
                await self._deliver(message)
        except ConnectionClosed:
            pass
        if getattr(ws, "close_code", None) == POLICY_VIOLATION:
            await self._set_status(ConnectionStatus.AUTH_EXPIRED)
            raise AuthenticationExpiredError("Server rejected the token")
        raise ConnectionClosedError("Connection closed during registration")

    async def _send_on(self, ws: Any, message: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(ws.send(json.dumps(message)), self._send_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Sending {message.get('type')} timed out after {self._send_timeout:.0f}s"
            ) from None
        except ConnectionClosed as exc:
            raise ConnectionClosedError(f"Connection closed while sending {message.get('type')}") from exc

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any] | None:
        try:
            message = json.loads(raw)
        except (ValueError, TypeError, RecursionError):
            logger.warning("[Security] Dropping malformed WebSocket frame")
            return None
        if not isinstance(message, dict):
            logger.warning("[Security] Dropping non-object WebSocket frame")
            return None
        return message

    async def _listen(self, ws: Any) -> None:
        try:
            async for raw in ws:
                message = self._decode(raw)
                if message is not None:
                    await self._handle(message)
        except ConnectionClosed:
            pass
        finally:
            if self._ws is ws:
                self._ws = None
        await self._connection_lost(getattr(ws, "close_code", None))

    async def _handle(self, message: dict[str, Any]) -> None:
        correlation_id = message.get("correlationId")
        if isinstance(correlation_id, str) and correlation_id in self._pending:
            future = self._pending.pop(correlation_id)
            if future.done():
                return
            if message.get("type") == "error":
                future.set_exception(RemoteError(str(message.get("message", "Request failed"))))
            else:
                future.set_result(message)
            return

        if message.get("type") == "ping":
            try:
                await self.send({"type": "pong"})
            except TransportError:
                logger.debug("Could not answer ping")
            return

        await self._deliver(message)

    async def _deliver(self, message: dict[str, Any]) -> None:
        if self._on_message is None:
            return
        try:
            await self._on_message(message)
        except Exception:
            logger.exception("Error handling %s message", message.get("type"))

    async def _connection_lost(self, close_code: int | None) -> None:
        if self._heartbeat_task is not None and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None
        self._reject_pending(ConnectionClosedError("Connection closed"))

        if self._closing:
            return
        if close_code == POLICY_VIOLATION:
            logger.warning("Server closed the connection (1008); authentication expired")
            await self._set_status(ConnectionStatus.AUTH_EXPIRED)
            return

        logger.warning("Connection to %s lost (code %s)", self._url, close_code)
        await self._set_status(ConnectionStatus.DISCONNECTED)
        if self._reconnect.max_retries > 0:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect.initial_delay_ms / 1000
        max_delay = self._reconnect.max_delay_ms / 1000
        attempts = self._reconnect.max_retries
        for attempt in range(1, attempts + 1):
            logger.info("Reconnecting in %.1fs (attempt %d/%d)", delay, attempt, attempts)
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
                return
            except AuthenticationExpiredError:
                return
            except TransportError as exc:
                logger.warning("Reconnect attempt %d/%d failed: %s", attempt, attempts, exc)
            delay = min(delay * 2, max_delay)
        logger.error("Giving up on %s after %d reconnect attempts", self._url, attempts)

    async def _heartbeat_loop(self) -> None:
        """Send periodic pings to keep the session alive."""
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                try:
                    await self.send({"type": "ping"})
                except TransportError:
                    logger.debug("Heartbeat failed; will retry next interval")
        except asyncio.CancelledError:
            pass

    def _reject_pending(self, error: TransportError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._on_status is not None:
            try:
                await self._on_status(status)
            except Exception:
                logger.exception("Error in status handler")
