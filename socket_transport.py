"""
WebSocket transport for one therapy session.

A Connection owns exactly one reconnect-free socket. Inbound frames are exposed
as an async iterator of InboundFrame; outbound sends never raise. Transport
failures are reported through on_notice so the session can show them in the
transcript instead of crashing.
"""

import inspect
import json
import logging
from enum import Enum
from typing import Callable
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
import websockets.exceptions

from session_frames import FrameType, InboundFrame

logger = logging.getLogger(__name__)

# websockets frames arrive as str (text) or bytes (binary)
_BINARY_TYPES = (bytes, bytearray, memoryview)


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def build_url(url: str, token: str | None = None) -> str:
    """Append the bearer token as a ``token`` query parameter when present."""
    if not token:
        return url
    parts = urlsplit(url)
    query = urlencode({"token": token})
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _describe(data) -> str:
    if isinstance(data, _BINARY_TYPES):
        return f"<{len(data)} bytes>"
    return data if len(data) <= 120 else data[:120] + "..."


class Connection:
    """One persistent WebSocket connection, owned by a session.

    Usage:
        conn = await Connection.open(url, token, on_notice=print)
        await conn.send(json.dumps({"type": "start-session"}))
        async for frame in conn.frames():
            ...
        await conn.close()
    """

    def __init__(self, url: str, token: str | None = None,
                 on_notice: Callable[[str], None] | None = None,
                 connect=None):
        self.url = build_url(url, token)
        self.state = ConnectionState.IDLE
        self.on_notice = on_notice or (lambda text: None)
        self._connect = connect or websockets.connect
        self._ws = None
        self._open_callbacks: list[Callable] = []
        self._opened = False

    @classmethod
    async def open(cls, url: str, token: str | None = None,
                   on_notice: Callable[[str], None] | None = None,
                   connect=None, on_open: Callable | None = None) -> "Connection":
        """Create a connection and perform the handshake.

        The handle is returned even when the handshake fails; its state is
        then CLOSED and the failure has been reported via on_notice.
        """
        conn = cls(url, token=token, on_notice=on_notice, connect=connect)
        if on_open:
            conn.on_open(on_open)
        await conn.connect()
        return conn

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def on_open(self, callback: Callable):
        """Register a callback fired once, on the first successful open.

        Callbacks may be plain functions or coroutine functions.
        """
        self._open_callbacks.append(callback)

    async def connect(self) -> bool:
        if self.state is not ConnectionState.IDLE:
            logger.warning("connect() ignored in state %s", self.state.value)
            return self.is_open

        self.state = ConnectionState.CONNECTING
        logger.info("Connecting to %s", urlsplit(self.url).netloc or self.url)
        try:
            self._ws = await self._connect(self.url, max_size=None)
        except (websockets.exceptions.WebSocketException, OSError) as e:
            logger.error("Connection failed: %s", e)
            self.state = ConnectionState.CLOSED
            self._notice(f"Could not connect to the session server: {e}")
            return False

        self.state = ConnectionState.OPEN
        logger.info("Connection established")
        await self._fire_open()
        return True

    async def _fire_open(self):
        if self._opened:
            return
        self._opened = True
        for cb in self._open_callbacks:
            try:
                result = cb(self)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Open callback error: %s", e)

    def _notice(self, text: str):
        try:
            self.on_notice(text)
        except Exception as e:
            logger.error("Notice callback error: %s", e)

    async def send(self, data: str | bytes) -> bool:
        """Send a text or binary payload.

        Returns False (and logs) instead of raising when the connection is
        not open or the send fails. Callers must not assume delivery.
        """
        if self.state is not ConnectionState.OPEN or self._ws is None:
            logger.warning("Not connected, dropping send of %s", _describe(data))
            return False
        try:
            await self._ws.send(data)
        except (websockets.exceptions.WebSocketException, OSError) as e:
            logger.error("Send failed: %s", e)
            await self._mark_closed(f"Connection error: {e}")
            return False
        logger.debug("Sent %s", _describe(data))
        return True

    async def send_json(self, obj: dict) -> bool:
        return await self.send(json.dumps(obj))

    async def frames(self):
        """Async generator of inbound frames until the socket closes."""
        if self._ws is None:
            return
        ws = self._ws
        try:
            async for data in ws:
                if isinstance(data, _BINARY_TYPES):
                    logger.debug("Received binary frame (%d bytes)", len(data))
                    yield InboundFrame(FrameType.BINARY, bytes(data))
                else:
                    logger.debug("Received text frame: %s", _describe(data))
                    yield InboundFrame(FrameType.TEXT, data)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning("Connection closed with error: %s", e)
            await self._mark_closed(f"Connection error: {e}")
            return
        except (websockets.exceptions.WebSocketException, OSError) as e:
            logger.error("Receive failed: %s", e)
            await self._mark_closed(f"Connection error: {e}")
            return
        await self._mark_closed("Connection closed")

    async def _mark_closed(self, notice: str):
        # Explicit close() already moved us to CLOSED; stay quiet then
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        ws, self._ws = self._ws, None
        logger.info("Connection closed")
        self._notice(notice)
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError):
                pass

    async def close(self):
        """Close the socket. Safe to call any number of times."""
        if self.state is ConnectionState.CLOSED and self._ws is None:
            return
        self.state = ConnectionState.CLOSED
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                logger.debug("Error while closing socket: %s", e)
        logger.info("Connection closed by client")
