"""
OmniChat configuration.

Reads configuration from environment variables (and a local .env file)
with defaults that match the live services.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import dotenv
import ua_generator

from .transport import Backoff


@dataclass
class OmniChatConfig:
    """Runtime configuration shared by every platform client."""

    # Endpoints
    dgg_chat_url: str = "wss://chat.destiny.gg/ws"
    dgg_origin: str = "https://www.destiny.gg"
    kick_base_url: str = "https://kick.com"
    kick_web_url: str = "https://web.kick.com"
    kick_pusher_url: str = (
        "wss://ws-us2.pusher.com/app/32cbd69e4b950bf97679"
        "?protocol=7&client=js&version=8.4.0&flash=false"
    )
    twitch_irc_url: str = "wss://irc-ws.chat.twitch.tv/"
    twitch_origin: str = "https://www.twitch.tv"
    twitch_gql_url: str = "https://gql.twitch.tv/gql"
    twitch_helix_url: str = "https://api.twitch.tv/helix"
    twitch_client_id: str = "kimne78kx3ncx6brgo4mv6wki5h1ko"
    twitch_oauth_token: Optional[str] = None
    youtube_base_url: str = "https://www.youtube.com"

    # Identity presented on HTTP and WS handshakes; generated when unset
    user_agent: Optional[str] = None

    # Reconnect
    backoff_initial_ms: int = 1000
    backoff_max_ms: int = 30000
    max_reconnect_attempts: int = 10

    # Socket lifetime
    open_timeout: float = 10.0
    heartbeat_interval: float = 30.0

    # Dedup
    dedup_capacity: int = 5000
    dedup_evict_batch: int = 1000

    # Long-poll
    poll_min_delay_ms: int = 250
    poll_max_delay_ms: int = 15000
    poll_default_delay_ms: int = 1000
    poll_error_delay_ms: int = 2000
    request_timeout: float = 20.0
    delay_multiplier: float = 1.0

    # Fan-out
    queue_size: int = 10000

    # Logging and diagnostics
    diagnostics_path: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    # Raw "name=value; name2=value2" cookie strings per platform
    cookies: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "OmniChatConfig":
        """Load configuration from environment variables."""
        dotenv.load_dotenv(dotenv_path)
        defaults = cls()
        env = os.environ.get

        cookies = {}
        for platform in ("dgg", "kick", "twitch", "youtube"):
            value = env(f"OMNICHAT_COOKIES_{platform.upper()}")
            if value:
                cookies[platform] = value

        return cls(
            dgg_chat_url=env("DGG_CHAT_WSS_URL", defaults.dgg_chat_url),
            dgg_origin=env("DGG_CHAT_ORIGIN", defaults.dgg_origin),
            kick_base_url=env("KICK_BASE_URL", defaults.kick_base_url),
            kick_web_url=env("KICK_WEB_URL", defaults.kick_web_url),
            kick_pusher_url=env("KICK_PUSHER_URL", defaults.kick_pusher_url),
            twitch_irc_url=env("TWITCH_IRC_WSS_URL", defaults.twitch_irc_url),
            twitch_oauth_token=env("TWITCH_OAUTH_TOKEN"),
            youtube_base_url=env("YOUTUBE_BASE_URL", defaults.youtube_base_url),
            user_agent=env("OMNICHAT_USER_AGENT"),

            backoff_initial_ms=int(env("OMNICHAT_BACKOFF_INITIAL_MS", defaults.backoff_initial_ms)),
            backoff_max_ms=int(env("OMNICHAT_BACKOFF_MAX_MS", defaults.backoff_max_ms)),
            max_reconnect_attempts=int(env("OMNICHAT_MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts)),
            open_timeout=float(env("OMNICHAT_OPEN_TIMEOUT", defaults.open_timeout)),
            heartbeat_interval=float(env("OMNICHAT_HEARTBEAT_INTERVAL", defaults.heartbeat_interval)),

            dedup_capacity=int(env("OMNICHAT_DEDUP_CAPACITY", defaults.dedup_capacity)),
            dedup_evict_batch=int(env("OMNICHAT_DEDUP_EVICT_BATCH", defaults.dedup_evict_batch)),

            poll_error_delay_ms=int(env("OMNICHAT_POLL_ERROR_DELAY_MS", defaults.poll_error_delay_ms)),
            request_timeout=float(env("OMNICHAT_REQUEST_TIMEOUT", defaults.request_timeout)),
            delay_multiplier=float(env("OMNICHAT_DELAY_MULTIPLIER", defaults.delay_multiplier)),
            queue_size=int(env("OMNICHAT_QUEUE_SIZE", defaults.queue_size)),

            diagnostics_path=env("OMNICHAT_DIAGNOSTICS_PATH"),
            log_level=env("OMNICHAT_LOG_LEVEL", defaults.log_level),
            log_dir=env("OMNICHAT_LOG_DIR"),
            cookies=cookies,
        )

    def backoff(self, max_attempts: Optional[int] = None) -> Backoff:
        """Build the reconnect policy. ``max_attempts=0`` retries forever."""
        return Backoff(
            initial_ms=self.backoff_initial_ms,
            max_ms=self.backoff_max_ms,
            max_attempts=self.max_reconnect_attempts if max_attempts is None else max_attempts,
        )

    def resolve_user_agent(self) -> str:
        """Return the configured user agent, generating a desktop one once."""
        if not self.user_agent:
            self.user_agent = ua_generator.generate(device="desktop").text
        return self.user_agent
