"""
Byte streams that carry the PostgreSQL wire protocol.

The protocol layer only needs ``send`` and ``recv``; these classes adapt an
asyncio TCP connection or an aiohttp WebSocket (binary frames proxied to a
server's TCP port) to that contract and translate transport failures into
:class:`~postpyro.errors.ConnectionLostError`.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Protocol, runtime_checkable

import aiohttp
import structlog

from .errors import ConnectionLostError, OperationalError

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 65536


@runtime_checkable
class ByteStream(Protocol):
    """Ordered, reliable byte stream to the server."""

    @property
    def closed(self) -> bool: ...

    async def send(self, data: bytes) -> None: ...

    async def recv(self) -> bytes:
        """Next chunk of bytes; empty bytes on end of stream."""
        ...

    async def close(self) -> None: ...


class TcpStream:
    """Plain TCP stream based on asyncio streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    @classmethod
    async def open(
        cls, host: str, port: int, connect_timeout: float | None = None
    ) -> "TcpStream":
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise OperationalError(
                f"Timed out connecting to {host}:{port} after {connect_timeout}s"
            ) from e
        except OSError as e:
            raise OperationalError(f"Could not connect to {host}:{port}: {e}") from e

        sock = writer.get_extra_info("socket")
        if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.debug("TCP stream opened", host=host, port=port)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionLostError("Stream is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            raise ConnectionLostError(f"Send failed: {e}") from e

    async def recv(self) -> bytes:
        if self._closed:
            raise ConnectionLostError("Stream is closed")
        try:
            return await self._reader.read(READ_CHUNK_SIZE)
        except OSError as e:
            raise ConnectionLostError(f"Receive failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug("Error while closing TCP stream", error=str(e))


class WebSocketStream:
    """Protocol bytes in binary WebSocket frames (aiohttp client)."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._ws = ws
        # Only set when this stream created the session and must close it.
        self._owned_session = session

    @classmethod
    async def open(
        cls,
        url: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
        connect_timeout: float | None = None,
    ) -> "WebSocketStream":
        owned = session is None
        client = session or aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                client.ws_connect(url, heartbeat=heartbeat, max_msg_size=0),
                timeout=connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if owned:
                await client.close()
            raise OperationalError(f"WebSocket connect error: {e}") from e
        logger.debug("WebSocket stream opened", url=url)
        return cls(ws, client if owned else None)

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, data: bytes) -> None:
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise ConnectionLostError(f"WebSocket send failed: {e}") from e

    async def recv(self) -> bytes:
        msg = await self._ws.receive()
        if msg.type is aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            raise ConnectionLostError("WebSocket closed during receive")
        if msg.type is aiohttp.WSMsgType.ERROR:
            raise ConnectionLostError(f"WebSocket error during receive: {self._ws.exception()}")
        raise ConnectionLostError(f"Unexpected WebSocket message type: {msg.type}")

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            if self._owned_session is not None:
                await self._owned_session.close()
                self._owned_session = None
