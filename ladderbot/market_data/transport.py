"""
Duplex stream transport contract and its websockets implementation.
"""

from __future__ import annotations

from typing import Awaitable, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed

from ladderbot.infra.errors import TransportError


class StreamTransport(Protocol):
    """
    Minimal transport the ConnectionManager drives.

    ``recv`` raises TransportError once the stream is closed. ``ping``
    returns an awaitable resolved by the peer's pong.
    """

    async def recv(self) -> Union[str, bytes]: ...

    async def send(self, data: str) -> None: ...

    async def ping(self) -> Awaitable[object]: ...

    async def close(self) -> None: ...


class WebsocketsTransport:
    """StreamTransport over a ``websockets`` client connection."""

    def __init__(self, ws) -> None:
        self._ws = ws

    @classmethod
    async def connect(cls, url: str, open_timeout: float = 10.0) -> "WebsocketsTransport":
        # Keepalive is owned by the ConnectionManager heartbeat
        ws = await websockets.connect(url, ping_interval=None, open_timeout=open_timeout, max_size=2 ** 22)
        return cls(ws)

    async def recv(self) -> Union[str, bytes]:
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise TransportError(f"stream closed: {exc}") from exc

    async def send(self, data: str) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as exc:
            raise TransportError(f"send on closed stream: {exc}") from exc

    async def ping(self) -> Awaitable[object]:
        try:
            return await self._ws.ping()
        except ConnectionClosed as exc:
            raise TransportError(f"ping on closed stream: {exc}") from exc

    async def close(self) -> None:
        await self._ws.close()
