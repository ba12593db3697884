"""
Unified facade over every platform client.
"""

import asyncio
import re
from typing import AsyncGenerator, Dict, Iterable, List, Optional, Tuple, Type, Union

from loguru import logger

from .base import BaseChatClient
from .channel import EventChannel
from .clients import DggChatClient, KickChatClient, TwitchChatClient, YouTubeChatClient
from .codecs.dgg import ROOM_ID as DGG_ROOM_ID
from .config import OmniChatConfig
from .diagnostics import DiagnosticsSink
from .events import ChatEvent, Platform, SendResult
from .exceptions import PlatformNotSupportedError
from .session import SessionStore

PlatformLike = Union[Platform, str]


def detect_platform(stream_url: str) -> Platform:
    """Detect the platform from a stream URL or bare handle."""
    url_lower = stream_url.strip().lower()

    if 'destiny.gg' in url_lower or url_lower == 'dgg':
        return Platform.DGG

    if any(domain in url_lower for domain in ['youtube.com', 'youtu.be']):
        return Platform.YOUTUBE

    if 'twitch.tv' in url_lower:
        return Platform.TWITCH

    if 'kick.com' in url_lower:
        return Platform.KICK

    # YouTube video ID pattern
    if re.match(r'^[a-zA-Z0-9_-]{11}$', stream_url.strip()):
        return Platform.YOUTUBE

    # Plain channel names default to Twitch
    if re.match(r'^#?[a-zA-Z0-9_]+$', stream_url.strip()) and len(stream_url.strip()) > 2:
        return Platform.TWITCH

    raise PlatformNotSupportedError(f"Cannot detect platform from: {stream_url}")


def coerce_platform(platform: PlatformLike) -> Platform:
    if isinstance(platform, Platform):
        return platform
    try:
        return Platform(str(platform).strip().lower())
    except ValueError:
        raise PlatformNotSupportedError(f"Platform '{platform}' is not supported") from None


class ChatAggregator:
    """
    Watches rooms across platforms and merges their events into one stream.

    Each platform client is created on first use and publishes to its own
    channel; a forwarder task per client copies events into the shared
    channel read by ``listen``.
    """

    PLATFORM_CLIENTS: Dict[Platform, Type[BaseChatClient]] = {
        Platform.DGG: DggChatClient,
        Platform.KICK: KickChatClient,
        Platform.TWITCH: TwitchChatClient,
        Platform.YOUTUBE: YouTubeChatClient,
    }

    def __init__(
        self,
        config: Optional[OmniChatConfig] = None,
        session: Optional[SessionStore] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        **kwargs,
    ):
        """
        Initialize the aggregator.

        Args:
            config: Shared configuration, defaults to ``OmniChatConfig()``
            session: Host-provided cookies
            diagnostics: Sink for unexpected wire shapes
            **kwargs: Platform-specific configuration options
                     - twitch_oauth_token: Twitch OAuth token used for sending
                     - dgg_url: Override for the DGG socket URL
                     - <platform>_connector: Socket factory, mainly for tests
                     - sleep: Coroutine used for backoff and poll delays
        """
        self.config = config or OmniChatConfig()
        self.session = session or SessionStore.from_config(self.config)
        self._owns_diagnostics = diagnostics is None
        self.diagnostics = diagnostics or DiagnosticsSink(self.config.diagnostics_path)
        self.events = EventChannel(self.config.queue_size, name="omnichat")
        self.options = kwargs
        self.clients: Dict[Platform, BaseChatClient] = {}
        self._forwarders: Dict[Platform, asyncio.Task] = {}

    def get_client(self, platform: PlatformLike) -> BaseChatClient:
        """Return the client for ``platform``, creating it on first use."""
        platform = coerce_platform(platform)
        client = self.clients.get(platform)
        if client is None:
            client = self.create_client(
                platform,
                config=self.config,
                session=self.session,
                diagnostics=self.diagnostics,
                **self._get_platform_config(platform),
            )
            self.clients[platform] = client
            self._forwarders[platform] = asyncio.create_task(
                self._forward(client), name=f"{platform.value}-forwarder"
            )
        return client

    def _get_platform_config(self, platform: Platform) -> Dict[str, object]:
        """Extract platform-specific configuration from general config."""
        config: Dict[str, object] = {}
        prefix = f"{platform.value}_"
        for key, value in self.options.items():
            if key.startswith(prefix):
                config[key[len(prefix):]] = value
        if 'sleep' in self.options:
            config['sleep'] = self.options['sleep']
        return config

    async def _forward(self, client: BaseChatClient) -> None:
        async for event in client.events:
            self.events.publish(event)

    async def set_targets(self, platform: PlatformLike, room_ids: Iterable[str], **opts) -> None:
        """
        Replace the watched rooms on one platform.

        Raises:
            PlatformNotSupportedError: unknown platform name
        """
        client = self.get_client(platform)
        room_ids = list(room_ids)
        logger.debug(f"[OmniChat] {client.get_platform_name()} targets -> {room_ids}")
        await client.set_targets(room_ids, **opts)

    async def watch(self, stream_url: str, **opts) -> Platform:
        """Add one stream by URL, keeping the rooms already watched."""
        platform = detect_platform(stream_url)
        client = self.get_client(platform)
        await client.set_targets(client.rooms + [stream_url], **opts)
        return platform

    def targets(self, platform: PlatformLike) -> List[str]:
        platform = coerce_platform(platform)
        client = self.clients.get(platform)
        return client.rooms if client else []

    def connect(self, auth_headers: Optional[Dict[str, str]] = None) -> None:
        """Open the DGG socket. DGG has a single room, so it is connect-driven."""
        client = self.get_client(Platform.DGG)
        client.targets.apply([DGG_ROOM_ID])
        client.connect(auth_headers)

    async def disconnect(self) -> None:
        client = self.clients.get(Platform.DGG)
        if client is not None:
            await client.set_targets([])

    async def send_message(self, platform: PlatformLike, room_id: str, text: str) -> SendResult:
        """Send a chat line. Failures are returned as ``SendResult``."""
        try:
            client = self.get_client(platform)
        except PlatformNotSupportedError as e:
            return SendResult.fail(str(e))
        return await client.send_message(room_id, text)

    async def refetch_history(self, platform: PlatformLike, room_ids: Optional[Iterable[str]] = None) -> None:
        await self.get_client(platform).refetch_history(room_ids)

    async def listen(self) -> AsyncGenerator[ChatEvent, None]:
        """
        Listen for events from every platform.

        Yields:
            ChatEvent: Events in delivery order per room
        """
        async for event in self.events:
            yield event

    async def close(self) -> None:
        """Stop every client and end ``listen``."""
        for platform, client in list(self.clients.items()):
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"[OmniChat] Error closing {platform.value} client: {e}")
            finally:
                # ends the forwarder even when close() failed part way
                client.events.close()
        if self._forwarders:
            await asyncio.gather(*self._forwarders.values(), return_exceptions=True)
        self._forwarders.clear()
        self.clients.clear()
        self.events.close()
        if self._owns_diagnostics:
            self.diagnostics.close()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @classmethod
    def get_supported_platforms(cls) -> List[str]:
        """Get list of supported platforms."""
        return [platform.value for platform in cls.PLATFORM_CLIENTS]

    @classmethod
    def create_client(cls, platform: PlatformLike, **kwargs) -> BaseChatClient:
        """
        Create a platform-specific client directly.

        Args:
            platform: Platform name ('dgg', 'kick', 'twitch', 'youtube')
            **kwargs: Client configuration

        Returns:
            BaseChatClient: Platform-specific client instance
        """
        platform = coerce_platform(platform)
        if platform not in cls.PLATFORM_CLIENTS:
            raise PlatformNotSupportedError(f"Platform '{platform.value}' is not supported")
        return cls.PLATFORM_CLIENTS[platform](**kwargs)


def parse_target(stream_url: str) -> Tuple[Platform, str]:
    """Map a stream URL or handle to ``(platform, room handle)``."""
    platform = detect_platform(stream_url)
    return platform, ChatAggregator.PLATFORM_CLIENTS[platform].normalize_target(stream_url)
