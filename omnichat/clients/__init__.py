"""
Platform-specific chat client implementations.
"""

from .dgg import DggChatClient
from .kick import KickChatClient
from .twitch import TwitchChatClient
from .youtube import YouTubeChatClient

__all__ = ["DggChatClient", "KickChatClient", "TwitchChatClient", "YouTubeChatClient"]
