"""
OmniChat - live chat from several streaming platforms as one event stream.

Supports destiny.gg, Kick, Twitch and YouTube.
"""

from .config import OmniChatConfig
from .events import (
    ChatEvent, ConnectionStatus, EventKind, HistoryEvent, MessageEvent,
    ModerationEvent, MonetaryEvent, NoticeEvent, Platform, PollEvent,
    SendResult, StatusEvent, UserEvent,
)
from .exceptions import (
    AuthenticationError, IdentityResolutionError, OmniChatError,
    PlatformNotSupportedError, ProtocolError,
)
from .logger import setup_logging
from .session import SessionStore
from .wrapper import ChatAggregator, detect_platform, parse_target

__version__ = "0.1.0"
__all__ = [
    "ChatAggregator",
    "OmniChatConfig",
    "SessionStore",
    "setup_logging",
    "detect_platform",
    "parse_target",
    "ChatEvent",
    "MessageEvent",
    "UserEvent",
    "ModerationEvent",
    "PollEvent",
    "MonetaryEvent",
    "NoticeEvent",
    "HistoryEvent",
    "StatusEvent",
    "SendResult",
    "Platform",
    "EventKind",
    "ConnectionStatus",
    "OmniChatError",
    "PlatformNotSupportedError",
    "AuthenticationError",
    "IdentityResolutionError",
    "ProtocolError",
]
