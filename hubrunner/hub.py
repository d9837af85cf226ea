"""Hub client capability and its websocket implementation."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

import aiohttp

LOG = logging.getLogger(__name__)

MessageListener = Callable[[Mapping[str, Any]], None]


class HubError(RuntimeError):
    """Base error for hub client failures."""


class HubConnectionError(HubError):
    """Raised when the hub cannot be reached or the socket fails."""


class HubAuthError(HubError):
    """Raised when the hub rejects the access token."""


@dataclass(frozen=True, slots=True)
class HubTarget:
    """Where and how to reach the hub."""

    host: str
    port: int
    ssl: bool = False
    token: str = ""
    websocket_path: str = "/api/websocket"

    @property
    def url(self) -> str:
        scheme = "wss" if self.ssl else "ws"
        return f"{scheme}://{self.host}:{self.port}{self.websocket_path}"


@runtime_checkable
class HubClient(Protocol):
    """Protocol implemented by hub clients driven by the supervisor."""

    @property
    def connected(self) -> bool:
        """True once the session is authenticated and until it ends."""

    async def run(self, target: HubTarget, stopping: asyncio.Event) -> None:
        """Connect and block until the session ends or ``stopping`` is set."""

    async def stop(self) -> None:
        """Ask the current session to end."""


class WebSocketHubClient:
    """Hub client speaking the Home Assistant websocket handshake via aiohttp."""

    def __init__(self, *, connect_timeout: float = 10.0, heartbeat: float | None = 30.0) -> None:
        self._connect_timeout = connect_timeout
        self._heartbeat = heartbeat
        self._connected = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._listeners: set[MessageListener] = set()
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """Subscribe to inbound messages; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def send(self, message: Mapping[str, Any]) -> int:
        """Send a command, stamping it with the next message id."""

        ws = self._ws
        if ws is None or not self._connected:
            raise HubConnectionError("Hub session is not connected")
        message_id = next(self._ids)
        try:
            await ws.send_json({**message, "id": message_id})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise HubConnectionError(f"Failed to send message: {exc}") from exc
        return message_id

    async def run(self, target: HubTarget, stopping: asyncio.Event) -> None:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                try:
                    ws = await session.ws_connect(target.url, heartbeat=self._heartbeat)
                except (aiohttp.ClientError, OSError) as exc:
                    raise HubConnectionError(f"Failed to connect to {target.url}: {exc}") from exc
                self._ws = ws
                self._ids = itertools.count(1)
                try:
                    await self._authenticate(ws, target.token)
                    self._connected = True
                    LOG.info("Connected to hub", extra={"url": target.url})
                    await self._pump(ws, stopping)
                finally:
                    self._connected = False
                    self._ws = None
                    await ws.close()
        finally:
            self._connected = False

    async def stop(self) -> None:
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()

    async def _authenticate(self, ws: aiohttp.ClientWebSocketResponse, token: str) -> None:
        message = await self._receive_json(ws)
        if message.get("type") != "auth_required":
            raise HubConnectionError(f"Unexpected handshake message: {message.get('type')!r}")
        await ws.send_json({"type": "auth", "access_token": token})
        reply = await self._receive_json(ws)
        kind = reply.get("type")
        if kind == "auth_invalid":
            raise HubAuthError(str(reply.get("message") or "Access token rejected"))
        if kind != "auth_ok":
            raise HubConnectionError(f"Unexpected handshake reply: {kind!r}")

    async def _pump(self, ws: aiohttp.ClientWebSocketResponse, stopping: asyncio.Event) -> None:
        stop_waiter = asyncio.ensure_future(stopping.wait())
        try:
            while True:
                receiver = asyncio.ensure_future(ws.receive())
                done, _ = await asyncio.wait({receiver, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if receiver not in done:
                    receiver.cancel()
                    await asyncio.wait({receiver})
                    return
                msg = receiver.result()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.json())
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    LOG.info("Hub closed the session")
                    return
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise HubConnectionError(f"Hub socket error: {ws.exception()}")
        finally:
            stop_waiter.cancel()

    def _dispatch(self, payload: Any) -> None:
        messages = payload if isinstance(payload, list) else [payload]
        for message in messages:
            if not isinstance(message, Mapping):
                continue
            for listener in tuple(self._listeners):
                try:
                    listener(message)
                except Exception:
                    LOG.exception("Hub message listener failed", extra={"message_type": message.get("type")})

    @staticmethod
    async def _receive_json(ws: aiohttp.ClientWebSocketResponse) -> Mapping[str, Any]:
        msg = await ws.receive()
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise HubConnectionError(f"Hub closed the socket during handshake ({msg.type.name})")
        data = msg.json()
        if not isinstance(data, Mapping):
            raise HubConnectionError("Malformed handshake message")
        return data


__all__ = [
    "HubAuthError",
    "HubClient",
    "HubConnectionError",
    "HubError",
    "HubTarget",
    "MessageListener",
    "WebSocketHubClient",
]
