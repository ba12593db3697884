"""
Shared WebSocket connection manager.

One ``WebSocketTransport`` owns one socket: it opens it under a bounded
timeout, feeds every text frame to its owner, and reconnects with
exponential backoff until stopped or out of attempts.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import websockets
from loguru import logger
from websockets.asyncio.client import connect

from .events import ConnectionStatus


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Backoff:
    """Reconnect delay policy. ``max_attempts=0`` means retry forever."""
    initial_ms: int = 1000
    max_ms: int = 30000
    max_attempts: int = 10

    def delay_ms(self, attempt: int) -> int:
        """Delay before reconnect ``attempt`` (1-based)."""
        if attempt < 1:
            return 0
        return min(self.initial_ms * 2 ** (attempt - 1), self.max_ms)

    def exhausted(self, attempts_made: int) -> bool:
        return self.max_attempts > 0 and attempts_made >= self.max_attempts


async def open_websocket(url: str, headers: Optional[Dict[str, str]] = None, heartbeat_interval: float = 30.0):
    """Open a client socket. Server pings are answered by the library."""
    headers = dict(headers or {})
    user_agent = headers.pop("User-Agent", None)
    kwargs: Dict[str, Any] = {
        "additional_headers": headers or None,
        "open_timeout": None,
        "ping_interval": heartbeat_interval,
        "ping_timeout": heartbeat_interval,
        "max_size": None,
    }
    if user_agent:
        kwargs["user_agent_header"] = user_agent
    return await connect(url, **kwargs)


Connector = Callable[[str, Optional[Dict[str, str]]], Awaitable[Any]]
StatusCallback = Callable[..., None]


async def _maybe_await(result) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class WebSocketTransport:
    """
    Connection lifecycle for one socket.

    Args:
        name: Log prefix, e.g. ``"Kick"``
        url: Socket URL
        on_frame: Called with every text frame (sync or async)
        on_open: Called after each successful open
        on_close: Called with ``(code, reason)`` after each close
        on_status: Called with a ``ConnectionStatus`` and keyword fields
        backoff: Reconnect policy
        open_timeout: Seconds allowed for the handshake
        heartbeat_interval: Seconds between client pings
        connector: ``connector(url, headers)`` returning an open socket
        diagnostics: Optional ``DiagnosticsSink``
    """

    def __init__(
        self,
        name: str,
        url: str,
        on_frame: Callable[[str], Any],
        on_open: Optional[Callable[[], Any]] = None,
        on_close: Optional[Callable[[Optional[int], Optional[str]], Any]] = None,
        on_status: Optional[StatusCallback] = None,
        backoff: Optional[Backoff] = None,
        open_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        connector: Optional[Connector] = None,
        diagnostics=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.url = url
        self.backoff = backoff or Backoff()
        self.open_timeout = open_timeout
        self.heartbeat_interval = heartbeat_interval
        self.diagnostics = diagnostics
        self.state = ConnectionState.IDLE
        self.reconnect_attempt = 0
        self.next_delay_ms: Optional[int] = None

        self._on_frame = on_frame
        self._on_open = on_open
        self._on_close = on_close
        self._on_status = on_status
        self._connector = connector or self._default_connector
        self._sleep = sleep
        self._headers: Optional[Dict[str, str]] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    async def _default_connector(self, url: str, headers: Optional[Dict[str, str]]):
        return await open_websocket(url, headers, self.heartbeat_interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self._ws is not None

    def start(self, headers: Optional[Dict[str, str]] = None) -> None:
        """Begin connecting in the background. No-op while already running."""
        if headers is not None:
            self._headers = dict(headers)
        if self.running:
            return
        self._stopping = False
        self.reconnect_attempt = 0
        self.next_delay_ms = None
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-socket")

    async def stop(self) -> None:
        """Close the socket and cancel any pending reconnect. Never raises."""
        was_active = self.running or self._ws is not None
        self._stopping = True
        self.state = ConnectionState.CLOSING

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Ignoring error while closing socket: {e}")

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[{self.name}] Ignoring error from socket task during shutdown: {e}")

        self.state = ConnectionState.CLOSED
        self.reconnect_attempt = 0
        self.next_delay_ms = None
        if was_active:
            self._status(ConnectionStatus.DISCONNECTED, code=1000, reason="client disconnect")

    async def drop(self) -> None:
        """Close the current socket and let the reconnect loop take over."""
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Ignoring error while dropping socket: {e}")

    async def send_text(self, text: str) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send(text)
            return True
        except Exception as e:
            logger.warning(f"[{self.name}] Send failed: {e}")
            return False

    async def _run(self) -> None:
        while not self._stopping:
            self.state = ConnectionState.CONNECTING
            self._status(ConnectionStatus.CONNECTING, attempt=self.reconnect_attempt)
            code: Optional[int] = None
            reason: Optional[str] = None
            try:
                ws = await asyncio.wait_for(self._connector(self.url, self._headers), self.open_timeout)
            except asyncio.TimeoutError:
                reason = f"no open within {self.open_timeout}s"
                logger.warning(f"[{self.name}] Connection timeout, {reason}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = str(e)
                logger.warning(f"[{self.name}] Connection failed: {e}")
            else:
                code, reason = await self._serve(ws)

            if self._stopping:
                break
            self.state = ConnectionState.CLOSED
            self._status(ConnectionStatus.DISCONNECTED, code=code, reason=reason)
            if not await self._backoff_sleep():
                break

    async def _serve(self, ws) -> Tuple[Optional[int], Optional[str]]:
        self._ws = ws
        self.reconnect_attempt = 0
        self.next_delay_ms = None
        self.state = ConnectionState.OPEN
        logger.info(f"[{self.name}] Connected to {self.url}")
        self._status(ConnectionStatus.CONNECTED)
        try:
            if self._on_open is not None:
                await _maybe_await(self._on_open())
            async for frame in ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8", errors="replace")
                await self._dispatch(frame)
        except websockets.exceptions.ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] Socket error: {e}")
        finally:
            if self._ws is ws:
                self._ws = None

        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", None)
        logger.info(f"[{self.name}] Disconnected (code={code}, reason={reason!r})")
        if self._on_close is not None:
            try:
                await _maybe_await(self._on_close(code, reason))
            except Exception as e:
                logger.warning(f"[{self.name}] Close handler failed: {e}")
        return code, reason

    async def _dispatch(self, frame: str) -> None:
        try:
            await _maybe_await(self._on_frame(frame))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected error handling frame: {e}")
            if self.diagnostics is not None:
                self.diagnostics.record(
                    self.name.lower(), "handler_exception", preview=frame, error=str(e)
                )

    async def _backoff_sleep(self) -> bool:
        if self.backoff.exhausted(self.reconnect_attempt):
            logger.error(f"[{self.name}] Max reconnection attempts reached")
            if self.diagnostics is not None:
                self.diagnostics.record(
                    self.name.lower(), "max_reconnect_attempts_reached",
                    url=self.url, max_attempts=self.backoff.max_attempts,
                )
            self._status(ConnectionStatus.MAX_ATTEMPTS_REACHED, attempt=self.reconnect_attempt)
            return False

        self.reconnect_attempt += 1
        delay = self.backoff.delay_ms(self.reconnect_attempt)
        self.next_delay_ms = delay
        limit = self.backoff.max_attempts or "inf"
        logger.info(f"[{self.name}] Reconnecting in {delay}ms (attempt {self.reconnect_attempt}/{limit})")
        self._status(ConnectionStatus.RECONNECTING, attempt=self.reconnect_attempt, delay_ms=delay)
        await self._sleep(delay / 1000.0)
        return True

    def _status(self, status: ConnectionStatus, **fields) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status, **fields)
        except Exception as e:
            logger.warning(f"[{self.name}] Status handler failed: {e}")
