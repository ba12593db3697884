"""
Abstract base class for chat clients.
"""

import itertools
from abc import ABC, abstractmethod
from typing import AsyncGenerator, Iterable, List, Optional

from loguru import logger

from .channel import EventChannel
from .config import OmniChatConfig
from .dedup import DedupReconciler
from .diagnostics import DiagnosticsSink
from .events import (
    ChatEvent, ConnectionStatus, NoticeEvent, NoticeType, Platform,
    SendResult, StatusEvent,
)
from .session import SessionStore
from .targets import TargetRegistry


class BaseChatClient(ABC):
    """Abstract base class for platform-specific chat clients."""

    platform: Platform
    log_name: str = "Chat"

    def __init__(
        self,
        config: Optional[OmniChatConfig] = None,
        session: Optional[SessionStore] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        channel: Optional[EventChannel] = None,
        **kwargs,
    ):
        """
        Initialize the chat client.

        Args:
            config: Shared configuration (defaults are used when omitted)
            session: Read-only cookie store supplied by the host
            diagnostics: Sink for unexpected wire shapes
            channel: Event channel to publish to
            **kwargs: Platform-specific configuration
        """
        self.config = config or OmniChatConfig()
        self.session = session or SessionStore.from_config(self.config)
        self._owns_diagnostics = diagnostics is None
        self.diagnostics = diagnostics or DiagnosticsSink(self.config.diagnostics_path)
        self.events = channel or EventChannel(self.config.queue_size, name=self.platform.value)
        self.targets = TargetRegistry(self.platform, self.normalize_target)
        self.dedup = DedupReconciler(self.config.dedup_capacity, self.config.dedup_evict_batch)
        self.options = kwargs
        self._status_seq = itertools.count(1)

    @abstractmethod
    async def set_targets(self, handles: Iterable[str], **opts) -> None:
        """Replace the set of watched rooms."""
        pass

    @abstractmethod
    async def send_message(self, room_id: str, text: str) -> SendResult:
        """Send a chat line. Failures are returned, never raised."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop every room and release network resources."""
        pass

    def _finish_close(self) -> None:
        self.events.close()
        if self._owns_diagnostics:
            self.diagnostics.close()

    async def refetch_history(self, room_ids: Optional[Iterable[str]] = None) -> None:
        """Reload backlog for the given rooms. Platforms without backlog ignore this."""
        logger.debug(f"[{self.log_name}] History refetch is not supported")

    async def listen(self) -> AsyncGenerator[ChatEvent, None]:
        """
        Listen for chat events.

        Yields:
            ChatEvent: Normalized events, in delivery order per room
        """
        async for event in self.events:
            yield event

    def emit(self, event: ChatEvent) -> None:
        self.events.publish(event)

    def emit_status(self, status: ConnectionStatus, room_id: str = "*", **fields) -> None:
        self.emit(StatusEvent(
            platform=self.platform,
            room_id=room_id,
            event_id=f"status:{next(self._status_seq)}",
            status=status,
            **fields,
        ))

    def emit_error(self, room_id: str, text: str, data=None) -> None:
        self.emit(NoticeEvent(
            platform=self.platform,
            room_id=room_id,
            event_id=f"error:{next(self._status_seq)}",
            notice=NoticeType.ERROR,
            text=text,
            data=data,
        ))

    @staticmethod
    def normalize_target(handle: str) -> str:
        """Reduce a handle or stream URL to the platform's room key."""
        handle = handle.strip().rstrip('/')
        return handle.split('/')[-1].lower()

    @property
    def rooms(self) -> List[str]:
        return list(self.targets)

    def get_platform_name(self) -> str:
        """Return the platform name."""
        return self.platform.value

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
