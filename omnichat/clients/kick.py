"""
Kick chat client using WebSocket and Pusher protocol.
"""

import asyncio
import itertools
import json
import time
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote, unquote

import cloudscraper
from loguru import logger

from ..base import BaseChatClient
from ..codecs import kick
from ..dedup import sort_backlog
from ..events import ConnectionStatus, HistoryEvent, MessageEvent, Platform, SendResult
from ..exceptions import (
    ApiError, FrameDecodeError, IdentityResolutionError, OmniChatError, RoomNotFoundError,
)
from ..targets import RoomIdentity
from ..transport import WebSocketTransport


class KickApi:
    """
    Kick HTTP endpoints: channel lookup, chat history and sending.

    cloudscraper is blocking, so every request runs in a worker thread.
    Session cookies are presented on each request and never written back.
    """

    def __init__(self, config, session, diagnostics=None, scraper=None):
        self.config = config
        self.session = session
        self.diagnostics = diagnostics
        self.scraper = scraper or cloudscraper.CloudScraper()

    def _headers(self, slug: str, accept: str) -> Dict[str, str]:
        return {
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
            "Alt-Used": "kick.com",
            "Connection": "keep-alive",
            "Origin": self.config.kick_base_url,
            "Referer": f"{self.config.kick_base_url}/{quote(slug)}",
            "User-Agent": self.config.resolve_user_agent(),
        }

    def _request(self, method: str, url: str, headers: Dict[str, str], body: Optional[Dict[str, Any]] = None) -> Tuple[int, str]:
        try:
            with self.scraper.request(
                method,
                url,
                headers=headers,
                cookies=dict(self.session.cookies_for("kick")),
                json=body,
                timeout=self.config.request_timeout,
            ) as response:
                return response.status_code, response.text
        except Exception as e:
            raise ApiError(f"Request to {url} failed: {e}", url=url) from e

    async def request_text(self, url: str, slug: str, accept: str = "application/json,text/plain,*/*") -> str:
        status, text = await asyncio.to_thread(self._request, "GET", url, self._headers(slug, accept))
        if status < 200 or status >= 300:
            raise ApiError(f"HTTP {status} for {url}", status=status, url=url)
        return text

    async def get_json(self, url: str, slug: str) -> Any:
        text = await self.request_text(url, slug)
        try:
            return json.loads(text)
        except ValueError as e:
            raise ApiError(f"Non-JSON response for {url}", url=url) from e

    async def get_html(self, url: str, slug: str) -> str:
        return await self.request_text(
            url, slug, accept="text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
        )

    async def resolve_channel(self, slug: str) -> RoomIdentity:
        """
        Resolve a slug to its chatroom id (and channel id when available).

        Tries the chatroom endpoint, then the v2 and v1 channel endpoints,
        then scrapes the popout and chatroom pages.
        """
        base = self.config.kick_base_url
        quoted = quote(slug)

        try:
            info = kick.parse_chatroom_payload(await self.get_json(f"{base}/api/v2/channels/{quoted}/chatroom", slug))
            if info["chatroom_id"]:
                return self._identity(slug, info)
        except ApiError as e:
            logger.warning(f"[Kick] Chatroom endpoint failed for {slug}: {e}")

        last_error: Optional[Exception] = None
        for url in (f"{base}/api/v2/channels/{quoted}", f"{base}/api/v1/channels/{quoted}"):
            try:
                info = kick.parse_channel_info(await self.get_json(url, slug))
            except ApiError as e:
                logger.warning(f"[Kick] Channel info fetch failed for {slug}: {e}")
                last_error = e
                continue
            if info["chatroom_id"]:
                return self._identity(slug, info)
            last_error = IdentityResolutionError(f"Missing chatroom id for '{slug}' from {url}")

        for url in (f"{base}/popout/{quoted}/chat", f"{base}/{quoted}/chatroom"):
            try:
                chatroom_id = kick.extract_chatroom_id_from_html(await self.get_html(url, slug))
            except ApiError as e:
                logger.warning(f"[Kick] Chatroom scrape failed for {slug}: {e}")
                continue
            if chatroom_id:
                return self._identity(slug, {"chatroom_id": chatroom_id, "channel_id": 0, "chat_user_count": None})

        if isinstance(last_error, ApiError) and last_error.status == 404:
            raise RoomNotFoundError(f"Channel not found: {slug}")
        raise IdentityResolutionError(f"Failed to fetch Kick channel info for '{slug}': {last_error}")

    def _identity(self, slug: str, info: Dict[str, Any]) -> RoomIdentity:
        return RoomIdentity(
            platform=Platform.KICK,
            room_id=str(info["chatroom_id"]),
            aux={"slug": slug, **info},
        )

    async def fetch_history(self, slug: str, identity: RoomIdentity) -> List[MessageEvent]:
        """
        Fetch the room backlog in chronological order.

        History is keyed inconsistently, so both the channel id and the
        chatroom id are tried. If the endpoint answers with an empty list,
        an alternate chatroom id scraped from the popout page is tried once.
        """
        channel_id = identity.aux.get("channel_id") or 0
        chatroom_id = identity.aux.get("chatroom_id") or 0
        tried: Set[int] = set()
        last_error: Optional[Exception] = None

        while chatroom_id and chatroom_id not in tried:
            tried.add(chatroom_id)
            saw_empty = False
            for request_id in dict.fromkeys(i for i in (channel_id, chatroom_id) if i):
                url = f"{self.config.kick_web_url}/api/v1/chat/{request_id}/history"
                try:
                    payload = await self.get_json(url, slug)
                except ApiError as e:
                    last_error = e
                    logger.warning(f"[Kick] History fetch attempt failed for {slug} ({request_id}): {e}")
                    continue

                items = kick.find_history_array(payload)
                if items is None:
                    if self.diagnostics is not None:
                        keys = list(payload)[:40] if isinstance(payload, dict) else None
                        self.diagnostics.record("kick", "history_fetch_unrecognized", slug=slug, request_id=request_id, keys=keys)
                    continue
                if not items:
                    saw_empty = True
                    continue

                return sort_backlog(self._normalize_backlog(items, slug))

            if not saw_empty:
                break
            try:
                html = await self.get_html(f"{self.config.kick_base_url}/popout/{quote(slug)}/chat", slug)
            except ApiError as e:
                logger.warning(f"[Kick] History id scrape failed for {slug}: {e}")
                break
            chatroom_id = kick.extract_chatroom_id_from_html(html)

        logger.warning(f"[Kick] History fetch failed for {slug}: {last_error or 'no messages'}")
        return []

    def _normalize_backlog(self, items: List[Any], slug: str) -> List[MessageEvent]:
        events = []
        for item in items:
            try:
                event = kick.normalize_message(item, slug, is_history=True)
            except Exception as e:
                logger.warning(f"[Kick] Skipping bad history item for {slug}: {e}")
                if self.diagnostics is not None:
                    self.diagnostics.record("kick", "history_item_error", preview=json.dumps(item, default=str), slug=slug, error=str(e))
                continue
            if event is not None:
                events.append(event)
        return events

    async def send_message(self, identity: RoomIdentity, slug: str, text: str) -> SendResult:
        url = f"{self.config.kick_base_url}/api/v2/messages/send/{identity.aux['chatroom_id']}"
        headers = self._headers(slug, "application/json")
        headers["Content-Type"] = "application/json"
        xsrf = self.session.cookie("kick", "XSRF-TOKEN")
        if xsrf:
            headers["X-XSRF-TOKEN"] = unquote(xsrf)
        bearer = self.session.cookie("kick", "session_token")
        if bearer:
            headers["Authorization"] = f"Bearer {unquote(bearer)}"
        body = {"content": text, "type": "message", "message_ref": str(int(time.time() * 1000))}

        try:
            status, response_text = await asyncio.to_thread(self._request, "POST", url, headers, body)
        except ApiError as e:
            return SendResult.fail(str(e))
        if 200 <= status < 300:
            return SendResult.ok()
        error = None
        try:
            error = (json.loads(response_text).get("status") or {}).get("message")
        except (ValueError, AttributeError):
            pass
        return SendResult.fail(str(error or response_text[:200] or f"HTTP {status}"))


class KickChatClient(BaseChatClient):
    """
    Kick chat over Pusher.

    Each slug is resolved once to its ids, then subscribed on several channel
    names. Subscriptions wait for ``pusher:connection_established`` and are
    sent once per established connection.
    """

    platform = Platform.KICK
    log_name = "Kick"

    def __init__(self, config=None, api: Optional[KickApi] = None, connector=None, sleep=asyncio.sleep, **kwargs):
        super().__init__(config, **kwargs)
        self.api = api or KickApi(self.config, self.session, self.diagnostics)
        self.identities: Dict[str, RoomIdentity] = {}
        self._channels: Dict[str, List[str]] = {}
        self._channel_to_slug: Dict[str, str] = {}
        self._chatroom_to_slug: Dict[int, str] = {}
        self._sent: Set[str] = set()
        self.subscribed: Set[str] = set()
        self._established = False
        self._history_tasks: Dict[str, asyncio.Task] = {}
        self._unknown_events: Set[str] = set()
        self._history_seq = itertools.count(1)
        self._handlers = {
            kick.CHAT_MESSAGE_EVENT: lambda data, slug: kick.normalize_message(data, slug),
            kick.USER_BANNED_EVENT: lambda data, slug: kick.ban_event(data, slug, banned=True),
            kick.USER_UNBANNED_EVENT: lambda data, slug: kick.ban_event(data, slug, banned=False),
            kick.SUBSCRIPTION_EVENT: kick.subscription_event,
            kick.GIFTED_SUBSCRIPTIONS_EVENT: kick.gifted_subscriptions_event,
        }
        self.transport = WebSocketTransport(
            "Kick",
            self.config.kick_pusher_url,
            on_frame=self._handle_frame,
            on_close=self._on_close,
            on_status=self._on_status,
            backoff=self.config.backoff(max_attempts=0),
            open_timeout=self.config.open_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            connector=connector,
            diagnostics=self.diagnostics,
            sleep=sleep,
        )

    async def resolve(self, slug: str, refresh: bool = False) -> RoomIdentity:
        """Resolve (and cache) a slug's ids. ``refresh`` bypasses the cache."""
        slug = self.normalize_target(slug)
        identity = self.identities.get(slug)
        if identity is None or refresh:
            identity = await self.api.resolve_channel(slug)
            self.identities[slug] = identity
        return identity

    def get_chat_user_count(self, slug: str) -> Optional[int]:
        identity = self.identities.get(self.normalize_target(slug))
        return identity.aux.get("chat_user_count") if identity else None

    async def set_targets(self, handles: Iterable[str], **opts) -> None:
        diff = self.targets.apply(handles)

        for slug in diff.removed:
            await self._deactivate(slug)

        for slug in diff.added:
            try:
                identity = await self.resolve(slug)
            except OmniChatError as e:
                logger.warning(f"[Kick] Failed to add {slug}: {e}")
                self.targets.discard(slug)
                self.emit_error(slug, f"Failed to resolve Kick channel '{slug}': {e}")
                continue
            if slug in self.targets:
                await self._activate(slug, identity)

        if not len(self.targets) and (self.transport.running or diff.removed):
            await self.transport.stop()
            self._on_close(1000, "no targets")

    async def _activate(self, slug: str, identity: RoomIdentity) -> None:
        chatroom_id = identity.aux["chatroom_id"]
        channels = kick.channel_names(chatroom_id, identity.aux.get("channel_id"))
        self._channels[slug] = channels
        self._chatroom_to_slug[chatroom_id] = slug
        for name in channels:
            self._channel_to_slug[name] = slug

        if not self.transport.running:
            self.transport.start(self._handshake_headers())
        elif self._established:
            await self._flush_subscriptions()
        self._start_history(slug, identity)

    async def _deactivate(self, slug: str) -> None:
        for name in self._channels.pop(slug, []):
            self._channel_to_slug.pop(name, None)
            if name in self._sent:
                self._sent.discard(name)
                self.subscribed.discard(name)
                await self.transport.send_text(kick.unsubscribe_frame(name))
        for chatroom_id in [c for c, s in self._chatroom_to_slug.items() if s == slug]:
            del self._chatroom_to_slug[chatroom_id]
        task = self._history_tasks.pop(slug, None)
        if task is not None:
            task.cancel()
        self.dedup.release(slug)

    async def _flush_subscriptions(self) -> None:
        for channels in list(self._channels.values()):
            for name in channels:
                if name in self._sent:
                    continue
                self._sent.add(name)
                await self.transport.send_text(kick.subscribe_frame(name))

    def _start_history(self, slug: str, identity: RoomIdentity) -> None:
        previous = self._history_tasks.pop(slug, None)
        if previous is not None:
            previous.cancel()
        self._history_tasks[slug] = asyncio.create_task(self._load_history(slug, identity), name=f"kick-history-{slug}")

    async def _load_history(self, slug: str, identity: RoomIdentity) -> None:
        try:
            events = await self.api.fetch_history(slug, identity)
        except OmniChatError as e:
            logger.warning(f"[Kick] History load failed for {slug}: {e}")
            return
        finally:
            if self._history_tasks.get(slug) is asyncio.current_task():
                del self._history_tasks[slug]

        if slug not in self.targets:
            return
        items = self.dedup.filter(slug, events)
        logger.debug(f"[Kick] History for {slug}: {len(items)} new of {len(events)}")
        if items:
            self.emit(HistoryEvent(
                platform=Platform.KICK,
                room_id=slug,
                event_id=f"history:{slug}:{next(self._history_seq)}",
                occurred_at=items[-1].occurred_at,
                items=items,
            ))

    async def refetch_history(self, room_ids: Optional[Iterable[str]] = None) -> None:
        slugs = [self.normalize_target(s) for s in room_ids] if room_ids else list(self.targets)
        for slug in dict.fromkeys(s for s in slugs if s):
            try:
                identity = await self.resolve(slug)
            except OmniChatError as e:
                logger.warning(f"[Kick] History refetch failed for {slug}: {e}")
                continue
            # re-emit the whole backlog
            self.dedup.release(slug)
            await self._load_history(slug, identity)

    async def send_message(self, room_id: str, text: str) -> SendResult:
        slug = self.normalize_target(room_id or "")
        text = (text or "").strip()
        if not slug or not text:
            return SendResult.fail("Missing slug or content")
        try:
            identity = await self.resolve(slug)
        except OmniChatError as e:
            return SendResult.fail(str(e))
        result = await self.api.send_message(identity, slug, text)
        if not result.success:
            logger.warning(f"[Kick] Send failed for {slug}: {result.error}")
        return result

    async def close(self) -> None:
        for slug in list(self._history_tasks):
            self._history_tasks.pop(slug).cancel()
        for slug in self.targets.clear():
            self.dedup.release(slug)
        self._channels.clear()
        self._channel_to_slug.clear()
        self._chatroom_to_slug.clear()
        await self.transport.stop()
        self._on_close(1000, "closed")
        self._finish_close()

    def _handshake_headers(self) -> Dict[str, str]:
        return {
            "Origin": self.config.kick_base_url,
            "User-Agent": self.config.resolve_user_agent(),
        }

    async def _handle_frame(self, raw: str) -> None:
        try:
            frame = kick.parse_pusher_frame(raw)
        except FrameDecodeError as e:
            self.diagnostics.record("kick", "non_json_message", preview=raw, error=str(e))
            return

        event = frame["event"]
        if event == kick.PING:
            await self.transport.send_text(kick.pong_frame())
            return
        if event == kick.CONNECTION_ESTABLISHED:
            self._established = True
            await self._flush_subscriptions()
            return
        if event == kick.SUBSCRIPTION_SUCCEEDED:
            if isinstance(frame.get("channel"), str):
                self.subscribed.add(frame["channel"])
            return
        if event == kick.PUSHER_ERROR:
            logger.warning(f"[Kick] Pusher error: {raw[:200]}")
            self.diagnostics.record("kick", "pusher_error", preview=raw)
            return
        if event.startswith("pusher"):
            return

        handler = self._handlers.get(event)
        if handler is None:
            if event not in self._unknown_events:
                self._unknown_events.add(event)
                self.diagnostics.record("kick", "unhandled_event", preview=raw, event=event)
            return

        try:
            data = kick.event_data(frame)
        except FrameDecodeError as e:
            logger.warning(f"[Kick] {e}")
            self.diagnostics.record("kick", "event_parse_error", preview=e.preview, channel=frame.get("channel"), event=event)
            return
        if not isinstance(data, dict):
            return

        slug = self._slug_for(frame.get("channel"), data)
        if slug is None or slug not in self.targets:
            return
        chat_event = handler(data, slug)
        if chat_event is None:
            return
        if not self.dedup.first_seen(slug, chat_event.event_id):
            return
        self.emit(chat_event)

    def _slug_for(self, channel: Any, data: Dict[str, Any]) -> Optional[str]:
        slug = self._channel_to_slug.get(channel) if isinstance(channel, str) else None
        if slug:
            return slug
        chatroom_id = kick.positive_int(data.get("chatroom_id") or data.get("chatroomId"))
        if not chatroom_id and isinstance(channel, str):
            chatroom_id = kick.chatroom_id_from_channel(channel)
        return self._chatroom_to_slug.get(chatroom_id)

    def _on_close(self, code: Optional[int], reason: Optional[str]) -> None:
        self._established = False
        self._sent.clear()
        self.subscribed.clear()

    def _on_status(self, status: ConnectionStatus, **fields) -> None:
        self.emit_status(status, **fields)
