"""
YouTube chat client using InnerTube live chat continuations.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger

from ..base import BaseChatClient
from ..codecs import youtube as yt
from ..events import Platform, SendResult
from ..exceptions import ApiError, InitializationError

_VIDEO_ID_PATTERNS = [
    r'(?:v=|\/)([0-9A-Za-z_-]{11}).*',
    r'(?:embed\/)([0-9A-Za-z_-]{11})',
    r'(?:watch\?v=)([0-9A-Za-z_-]{11})',
]

# Consecutive polls without a continuation before the room is treated as ended
STALE_POLL_LIMIT = 3


@dataclass
class PollState:
    """Cursor and bootstrap values for one polled video."""
    video_id: str
    api_key: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    continuation: Optional[str] = None
    polls: int = 0
    stale_polls: int = 0
    next_delay_ms: Optional[int] = None
    task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> bool:
        return bool(self.context) and bool(self.continuation)


class YouTubeChatClient(BaseChatClient):
    """
    One cooperative poll loop per video.

    A loop awaits a single request at a time, then sleeps for the
    server-suggested delay (scaled and clamped). A failed poll is retried
    with the same continuation after a short pause.
    """

    platform = Platform.YOUTUBE
    log_name = "YouTube"

    def __init__(self, config=None, sleep=asyncio.sleep, **kwargs):
        super().__init__(config, **kwargs)
        self.delay_multiplier = yt.clamp_multiplier(self.config.delay_multiplier)
        self.states: Dict[str, PollState] = {}
        self.http: Optional[aiohttp.ClientSession] = None
        self._sleep = sleep

    @staticmethod
    def normalize_target(handle: str) -> str:
        handle = handle.strip()
        if re.match(r'^[0-9A-Za-z_-]{11}$', handle):
            return handle
        for pattern in _VIDEO_ID_PATTERNS:
            match = re.search(pattern, handle)
            if match:
                return match.group(1)
        return handle

    async def set_targets(self, handles: Iterable[str], delay_multiplier: Optional[float] = None, **opts) -> None:
        if delay_multiplier is not None:
            self.delay_multiplier = yt.clamp_multiplier(delay_multiplier)

        diff = self.targets.apply(handles)
        for video_id in diff.removed:
            await self._stop_room(video_id)
        for video_id in diff.added:
            self._start_room(video_id)

        if not len(self.targets):
            await self._close_http()

    def _start_room(self, video_id: str) -> None:
        state = PollState(video_id)
        self.states[video_id] = state
        state.task = asyncio.create_task(self._run_room(state), name=f"youtube-{video_id}")

    async def _stop_room(self, video_id: str) -> None:
        state = self.states.pop(video_id, None)
        self.dedup.release(video_id)
        if state is None or state.task is None or state.task.done():
            return
        state.task.cancel()
        try:
            await state.task
        except asyncio.CancelledError:
            pass

    def _forget(self, video_id: str) -> None:
        self.states.pop(video_id, None)
        self.targets.discard(video_id)
        self.dedup.release(video_id)

    async def _run_room(self, state: PollState) -> None:
        try:
            await self._initialize(state)
        except Exception as e:
            logger.warning(f"[YouTube] Start failed for {state.video_id}: {e}")
            # leave the desired set so a later set_targets call retries
            self._forget(state.video_id)
            self.emit_error(state.video_id, f"Failed to load YouTube chat for {state.video_id}: {e}")
            return
        logger.info(f"[YouTube] Polling chat for {state.video_id}")
        await self._poll_loop(state)

    async def _initialize(self, state: PollState) -> None:
        """
        Scrape the live chat page for the bootstrap values, falling back to
        the watch page for whatever is still missing.

        Raises:
            InitializationError: no context or no continuation was found
        """
        base = self.config.youtube_base_url
        video = quote(state.video_id)
        self._merge(state, yt.scrape_init_values(await self._fetch_text(f"{base}/live_chat?v={video}", state.video_id)))

        if not state.ready:
            try:
                html = await self._fetch_text(f"{base}/watch?v={video}", state.video_id)
            except (ApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"[YouTube] Watch page fallback failed for {state.video_id}: {e}")
            else:
                self._merge(state, yt.scrape_init_values(html))

        if not state.ready:
            raise InitializationError("Failed to extract INNERTUBE_CONTEXT or continuation from live_chat page")

    @staticmethod
    def _merge(state: PollState, values: Dict[str, Any]) -> None:
        state.api_key = state.api_key or values.get("api_key")
        state.context = state.context or values.get("context")
        state.continuation = state.continuation or values.get("continuation")

    async def _poll_loop(self, state: PollState) -> None:
        base = self.config.youtube_base_url
        url = f"{base}/youtubei/v1/live_chat/get_live_chat?prettyPrint=false"
        if state.api_key:
            url += f"&key={quote(state.api_key)}"

        while True:
            body = {"context": state.context, "continuation": state.continuation}
            try:
                payload = await self._post_json(url, body, state.video_id)
                actions, continuation, timeout_ms = yt.parse_continuation(payload)
            except Exception as e:
                logger.warning(f"[YouTube] Poll error for {state.video_id}: {e}")
                await self._sleep(self.config.poll_error_delay_ms / 1000.0)
                continue

            emitted = 0
            for event in yt.extract_messages(state.video_id, actions, on_error=self._action_failed(state.video_id)):
                if self.dedup.first_seen(state.video_id, event.event_id):
                    self.emit(event)
                    emitted += 1

            state.polls += 1
            if continuation:
                state.continuation = continuation
                state.stale_polls = 0
            else:
                state.stale_polls += 1
                if state.stale_polls >= STALE_POLL_LIMIT:
                    logger.info(f"[YouTube] No continuation for {state.video_id} after {state.stale_polls} polls, stopping")
                    self._forget(state.video_id)
                    self.emit_error(state.video_id, f"YouTube chat ended for {state.video_id}")
                    return

            state.next_delay_ms = yt.compute_poll_delay(
                timeout_ms,
                self.delay_multiplier,
                self.config.poll_min_delay_ms,
                self.config.poll_max_delay_ms,
                self.config.poll_default_delay_ms,
            )
            if state.polls <= 2 or emitted:
                logger.debug(f"[YouTube] {state.video_id} poll #{state.polls}: {emitted} new, next in {state.next_delay_ms}ms")
            await self._sleep(state.next_delay_ms / 1000.0)

    def _action_failed(self, video_id: str):
        def record(action: Any, error: Exception) -> None:
            logger.warning(f"[YouTube] Skipping bad chat action for {video_id}: {error}")
            self.diagnostics.record("youtube", "action_parse_error", preview=json.dumps(action, default=str), video_id=video_id, error=str(error))
        return record

    async def _session(self) -> aiohttp.ClientSession:
        if self.http is None or self.http.closed:
            self.http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                headers={"User-Agent": self.config.resolve_user_agent()},
                cookies=dict(self.session.cookies_for("youtube")),
            )
        return self.http

    async def _close_http(self) -> None:
        if self.http is not None and not self.http.closed:
            await self.http.close()
        self.http = None

    def _referer(self, video_id: str) -> str:
        return f"{self.config.youtube_base_url}/live_chat?v={quote(video_id)}"

    async def _fetch_text(self, url: str, video_id: str) -> str:
        http = await self._session()
        headers = {"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"}
        async with http.get(url, headers=headers) as response:
            if response.status != 200:
                raise ApiError(f"HTTP {response.status} for {url}", status=response.status, url=url)
            return await response.text()

    async def _post_json(self, url: str, body: Dict[str, Any], video_id: str) -> Any:
        http = await self._session()
        headers = {
            "Content-Type": "application/json",
            "Accept": "*/*",
            "Origin": self.config.youtube_base_url,
            "Referer": self._referer(video_id),
        }
        async with http.post(url, json=body, headers=headers) as response:
            if response.status != 200:
                text = await response.text()
                raise ApiError(f"HTTP {response.status} for {url} body={text[:300]}", status=response.status, url=url)
            return await response.json(content_type=None)

    async def send_message(self, room_id: str, text: str) -> SendResult:
        """Post a message using the room's current continuation as params."""
        video_id = self.normalize_target(room_id or "")
        state = self.states.get(video_id)
        if state is None or not state.ready:
            return SendResult.fail("Chat not loaded for this stream")
        text = (text or "").strip()
        if not text:
            return SendResult.fail("Message is empty")

        url = f"{self.config.youtube_base_url}/youtubei/v1/live_chat/send_message?prettyPrint=false"
        body = yt.send_message_body(state.context, state.continuation, text)
        try:
            payload = await self._post_json(url, body, video_id)
        except ApiError as e:
            logger.warning(f"[YouTube] Send failed for {video_id}: {e}")
            return SendResult.fail(f"Send failed ({e.status})" if e.status else str(e))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"[YouTube] Send failed for {video_id}: {e}")
            return SendResult.fail(str(e) or "Send failed")

        payload = payload if isinstance(payload, dict) else {}
        errors = payload.get("errors") or []
        error = (errors[0].get("message") if errors and isinstance(errors[0], dict) else None) \
            or (payload.get("error") or {}).get("message")
        if error:
            return SendResult.fail(str(error))
        return SendResult.ok()

    async def close(self) -> None:
        for video_id in list(self.states):
            await self._stop_room(video_id)
        self.targets.clear()
        await self._close_http()
        self._finish_close()
