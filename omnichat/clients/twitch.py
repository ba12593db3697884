"""
Twitch chat client using IRC over WebSocket.
"""

import asyncio
import json
import secrets
from typing import Dict, Iterable, Optional, Set
from urllib.parse import quote

import aiohttp
from loguru import logger

from ..base import BaseChatClient
from ..codecs import irc
from ..events import ConnectionStatus, Platform, SendResult
from ..exceptions import ApiError, AuthenticationError, FrameDecodeError
from ..transport import WebSocketTransport

GQL_CLIENT_VERSION = "31168246-1c5c-40c8-9a25-ed4247b03723"
SEND_CHAT_MESSAGE_HASH = "0435464292cf380ed4b3d905e4edcb73078362e82c06367a5b2181c76c822fa2"

ANONYMOUS_SEND_ERROR = "Twitch send requires login (not supported on anonymous connections)"


class TwitchChatClient(BaseChatClient):
    """
    Read-only Twitch chat over an anonymous IRC login.

    JOINs requested before the socket is open are sent once it opens.
    Sending needs an OAuth token (argument, config, or the ``auth-token``
    session cookie) and goes through the GQL ``sendChatMessage`` mutation.
    """

    platform = Platform.TWITCH
    log_name = "Twitch"

    def __init__(self, config=None, oauth_token: Optional[str] = None, connector=None, sleep=asyncio.sleep, **kwargs):
        """
        Initialize Twitch chat client.

        Args:
            config: Shared configuration
            oauth_token: Twitch OAuth token (optional, only used for sending)
            **kwargs: Additional configuration
        """
        super().__init__(config, **kwargs)
        self.oauth_token = oauth_token or self.config.twitch_oauth_token
        self.nick = kwargs.get("username") or irc.anonymous_nick()
        self.joined: Set[str] = set()
        self._channel_ids: Dict[str, str] = {}
        self.transport = WebSocketTransport(
            "Twitch",
            self.config.twitch_irc_url,
            on_frame=self._handle_frame,
            on_open=self._on_open,
            on_close=self._on_close,
            on_status=self._on_status,
            backoff=self.config.backoff(max_attempts=0),
            open_timeout=self.config.open_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            connector=connector,
            diagnostics=self.diagnostics,
            sleep=sleep,
        )

    @staticmethod
    def normalize_target(handle: str) -> str:
        return BaseChatClient.normalize_target(handle).lstrip("#")

    async def set_targets(self, handles: Iterable[str], **opts) -> None:
        diff = self.targets.apply(handles)

        for channel in diff.removed:
            await self._part(channel)
            self.dedup.release(channel)

        if not len(self.targets):
            if self.transport.running:
                await self.transport.stop()
            self.joined.clear()
            return

        if not self.transport.running:
            self.transport.start({
                "Origin": self.config.twitch_origin,
                "User-Agent": self.config.resolve_user_agent(),
            })
        elif self.transport.is_open:
            await self._flush_joins()

    async def _on_open(self) -> None:
        for line in irc.login_lines(self.nick):
            await self._send_line(line)
        await self._flush_joins()

    async def _flush_joins(self) -> None:
        for channel in self.targets:
            if channel in self.joined:
                continue
            if await self._send_line(irc.format_line("JOIN", f"#{channel}")):
                self.joined.add(channel)

    async def _part(self, channel: str) -> None:
        if channel not in self.joined:
            return
        self.joined.discard(channel)
        await self._send_line(irc.format_line("PART", f"#{channel}"))

    async def _send_line(self, line: str) -> bool:
        return await self.transport.send_text(line + "\r\n")

    async def _handle_frame(self, frame: str) -> None:
        for line in irc.split_lines(frame):
            if line.startswith("PING"):
                await self._send_line(irc.pong_for(line))
                continue
            try:
                message = irc.parse_line(line)
            except FrameDecodeError as e:
                logger.warning(f"[Twitch] {e}: {line[:100]!r}")
                self.diagnostics.record("twitch", "irc_parse_error", preview=line, error=str(e))
                continue
            try:
                await self._dispatch(message)
            except Exception as e:
                logger.warning(f"[Twitch] Failed to handle {message.command}: {e}")
                self.diagnostics.record("twitch", "irc_dispatch_error", preview=line, command=message.command, error=str(e))

    async def _dispatch(self, message: irc.IrcMessage) -> None:
        command = message.command
        if command == "PRIVMSG":
            event = irc.privmsg_to_event(message)
        elif command == "USERNOTICE":
            event = irc.usernotice_to_event(message)
        elif command == "CLEARCHAT":
            event = irc.clearchat_to_event(message)
        elif command == "RECONNECT":
            logger.info("[Twitch] Server requested reconnect")
            await self.transport.drop()
            return
        elif command == "NOTICE":
            logger.info(f"[Twitch] NOTICE {message.channel or '*'}: {message.trailing}")
            return
        else:
            return

        if event is None or event.room_id not in self.targets:
            return
        if not self.dedup.first_seen(event.room_id, event.event_id):
            return
        self.emit(event)

    def _on_close(self, code: Optional[int], reason: Optional[str]) -> None:
        self.joined.clear()

    def _on_status(self, status: ConnectionStatus, **fields) -> None:
        self.emit_status(status, **fields)

    def _resolve_oauth_token(self) -> Optional[str]:
        token = self.oauth_token or self.session.cookie("twitch", "auth-token")
        return token.strip() if token and token.strip() else None

    async def send_message(self, room_id: str, text: str) -> SendResult:
        token = self._resolve_oauth_token()
        if not token:
            return SendResult.fail(ANONYMOUS_SEND_ERROR)
        channel = self.normalize_target(room_id or "")
        text = (text or "").strip()
        if not channel:
            return SendResult.fail("Missing channel login")
        if not text:
            return SendResult.fail("Message is empty")

        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                channel_id = await self._lookup_channel_id(http, channel)
                return await self._gql_send(http, token, channel_id, text)
        except (ApiError, AuthenticationError) as e:
            return SendResult.fail(str(e))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Twitch] Send failed for {channel}: {e}")
            return SendResult.fail(f"Send failed: {e}")

    def _headers(self) -> Dict[str, str]:
        return {
            "Client-Id": self.config.twitch_client_id,
            "Accept": "application/json",
            "User-Agent": self.config.resolve_user_agent(),
        }

    async def _lookup_channel_id(self, http: aiohttp.ClientSession, login: str) -> str:
        cached = self._channel_ids.get(login)
        if cached:
            return cached
        url = f"{self.config.twitch_helix_url}/users?login={quote(login)}"
        async with http.get(url, headers=self._headers()) as response:
            if response.status != 200:
                raise ApiError(f"Helix lookup failed ({response.status})", status=response.status, url=url)
            data = await response.json(content_type=None)
        users = (data or {}).get("data") or []
        channel_id = users[0].get("id") if users else None
        if not channel_id:
            raise ApiError("Channel not found", url=url)
        self._channel_ids[login] = channel_id
        return channel_id

    async def _gql_send(self, http: aiohttp.ClientSession, token: str, channel_id: str, text: str) -> SendResult:
        body = {
            "operationName": "sendChatMessage",
            "variables": {
                "input": {
                    "channelID": str(channel_id),
                    "message": text,
                    "nonce": secrets.token_hex(16),
                    "replyParentMessageID": None,
                },
            },
            "extensions": {
                "persistedQuery": {"version": 1, "sha256Hash": SEND_CHAT_MESSAGE_HASH},
            },
        }
        headers = self._headers()
        headers.update({
            "Content-Type": "text/plain;charset=UTF-8",
            "Accept": "*/*",
            "Client-Version": GQL_CLIENT_VERSION,
            "Authorization": token if token.startswith("OAuth ") else f"OAuth {token}",
            "Origin": self.config.twitch_origin,
            "Referer": self.config.twitch_origin + "/",
        })
        async with http.post(self.config.twitch_gql_url, data=json.dumps(body), headers=headers) as response:
            if response.status in (401, 403):
                raise AuthenticationError(f"Twitch rejected the OAuth token ({response.status})")
            if response.status != 200:
                return SendResult.fail(f"Send failed ({response.status})")
            data = await response.json(content_type=None)

        errors = (data or {}).get("errors") or []
        result = ((data or {}).get("data") or {}).get("sendChatMessage") or {}
        error = (errors[0].get("message") if errors else None) or result.get("dropReason")
        if error:
            return SendResult.fail(str(error))
        return SendResult.ok()

    async def close(self) -> None:
        for channel in self.targets.clear():
            self.dedup.release(channel)
        await self.transport.stop()
        self.joined.clear()
        self._finish_close()
