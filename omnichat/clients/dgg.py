"""
destiny.gg chat client over its line-protocol WebSocket.
"""

import asyncio
from typing import Dict, Iterable, Optional

from loguru import logger

from ..base import BaseChatClient
from ..codecs import dgg
from ..diagnostics import TypeTracker
from ..events import ConnectionStatus, Platform, SendResult
from ..exceptions import ProtocolError, UnsupportedFrameError
from ..transport import WebSocketTransport

ROOM_ID = dgg.ROOM_ID


class DggChatClient(BaseChatClient):
    """
    Client for the single destiny.gg chat room.

    ``connect`` starts a background socket task; ``disconnect`` tears it down.
    A diagnostics session runs from one explicit ``connect`` to the next, so
    each unknown frame type is reported once per session.
    """

    platform = Platform.DGG
    log_name = "DGG"

    def __init__(self, config=None, url: Optional[str] = None, connector=None, sleep=asyncio.sleep, **kwargs):
        super().__init__(config, **kwargs)
        self.url = url or self.config.dgg_chat_url
        self.types = TypeTracker()
        self._auth_headers: Optional[Dict[str, str]] = None
        self.transport = WebSocketTransport(
            "DGG",
            self.url,
            on_frame=self._handle_frame,
            on_close=self._on_close,
            on_status=self._on_status,
            backoff=self.config.backoff(),
            open_timeout=self.config.open_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            connector=connector,
            diagnostics=self.diagnostics,
            sleep=sleep,
        )

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    def connect(self, auth_headers: Optional[Dict[str, str]] = None) -> None:
        """
        Start the connection. Auth headers are kept for every reconnect.

        Calling this after the reconnect budget ran out starts a fresh
        budget. Calling it while already running only updates the headers.
        """
        if auth_headers is not None:
            self._auth_headers = dict(auth_headers)
        if not self.transport.running:
            self.types.reset()
        self.transport.start(self._handshake_headers())

    async def disconnect(self) -> None:
        """Close the socket. Errors raised while closing are swallowed."""
        await self.transport.stop()
        self.dedup.release(ROOM_ID)

    async def send(self, raw: str) -> bool:
        """Send a raw frame. Returns False when the socket is not open."""
        if not self.transport.is_open:
            logger.warning("[DGG] Cannot send, not connected")
            return False
        return await self.transport.send_text(raw)

    async def send_message(self, room_id: str, text: str) -> SendResult:
        if not self.transport.is_open:
            return SendResult.fail("Not connected to DGG chat")
        if await self.send(dgg.encode_message(text)):
            return SendResult.ok()
        return SendResult.fail("Failed to write to DGG chat socket")

    async def set_targets(self, handles: Iterable[str], **opts) -> None:
        diff = self.targets.apply(handles)
        if len(self.targets):
            self.connect(opts.get("auth_headers"))
        elif diff.removed:
            await self.disconnect()

    async def close(self) -> None:
        self.targets.clear()
        await self.disconnect()
        self._finish_close()

    @staticmethod
    def normalize_target(handle: str) -> str:
        return ROOM_ID if handle and handle.strip() else ""

    def _handshake_headers(self) -> Dict[str, str]:
        headers = {
            "Origin": self.config.dgg_origin,
            "User-Agent": self.config.resolve_user_agent(),
        }
        cookie = self.session.cookie_header("dgg")
        if cookie:
            headers["Cookie"] = cookie
        headers.update(self._auth_headers or {})
        return headers

    def _handle_frame(self, frame: str) -> None:
        token, payload = dgg.split_frame(frame)
        supported = dgg.is_supported(token)
        if self.types.observe(token):
            if not supported:
                logger.info(f"[DGG] Unsupported message type: {token}")
            self.diagnostics.record(
                "dgg",
                "new_type_observed" if supported else "unsupported_message",
                # HISTORY payloads can be huge
                preview=None if token == "HISTORY" else frame[:400],
                type=token,
                length=len(frame),
            )
        if not supported:
            return

        if token == "HISTORY":
            self._handle_history(frame, payload)
            return

        try:
            event = dgg.decode_frame(frame, ROOM_ID)
        except ProtocolError as e:
            self._decode_failed(token, frame, e)
            return
        if dgg.is_replayable(event) and not self.dedup.first_seen(ROOM_ID, event.event_id):
            return
        self.emit(event)

    def _handle_history(self, frame: str, payload: str) -> None:
        try:
            history, errors = dgg.decode_history(payload, ROOM_ID)
        except ProtocolError as e:
            self._decode_failed("HISTORY", frame, e)
            return

        for error in errors:
            if isinstance(error, UnsupportedFrameError):
                if self.types.observe(error.token):
                    self.diagnostics.record(
                        "dgg", "unsupported_history_item", preview=error.preview[:400], type=error.token
                    )
            else:
                self._decode_failed(getattr(error, "token", None) or "HISTORY", error.preview, error)

        history.items = [
            e for e in history.items
            if not dgg.is_replayable(e) or self.dedup.first_seen(ROOM_ID, e.event_id)
        ]
        logger.debug(f"[DGG] HISTORY with {len(history.items)} items ({len(errors)} skipped)")
        if history.items:
            self.emit(history)

    def _decode_failed(self, token: str, frame: str, error: Exception) -> None:
        logger.warning(f"[DGG] Failed to parse {token}: {error} | {frame[:100]!r}")
        self.diagnostics.record("dgg", f"{token.lower()}_parse_error", preview=frame, error=str(error))

    def _on_close(self, code: Optional[int], reason: Optional[str]) -> None:
        self.diagnostics.record(
            "dgg", "socket_closed", code=code, reason=reason, type_counts=dict(self.types.counts)
        )

    def _on_status(self, status: ConnectionStatus, **fields) -> None:
        self.emit_status(status, room_id=ROOM_ID, **fields)
