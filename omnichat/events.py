"""
Normalized chat events shared by every platform client.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


class Platform(str, Enum):
    DGG = "dgg"
    KICK = "kick"
    TWITCH = "twitch"
    YOUTUBE = "youtube"


class EventKind(str, Enum):
    MESSAGE = "message"
    USER = "user"
    MODERATION = "moderation"
    POLL = "poll"
    MONETARY = "monetary"
    NOTICE = "notice"
    HISTORY = "history"
    STATUS = "status"


class UserAction(str, Enum):
    JOIN = "join"
    QUIT = "quit"
    UPDATE = "update"


class ModerationAction(str, Enum):
    MUTE = "mute"
    UNMUTE = "unmute"
    BAN = "ban"
    UNBAN = "unban"
    SUBONLY = "subonly"
    DEATH = "death"


class PollPhase(str, Enum):
    START = "start"
    VOTE = "vote"
    STOP = "stop"
    COUNTED = "counted"


class MonetaryAction(str, Enum):
    SUBSCRIPTION = "subscription"
    GIFT = "gift"
    MASS_GIFT = "mass_gift"
    DONATION = "donation"


class NoticeType(str, Enum):
    RELOAD = "reload"
    BROADCAST = "broadcast"
    ERROR = "error"
    PIN = "pin"
    NAMES = "names"
    ME = "me"
    PAID_EVENTS = "paid_events"
    REFRESH = "refresh"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"


def from_epoch_ms(value: Any) -> Optional[datetime]:
    """Convert a millisecond epoch (int or numeric string) to an aware datetime."""
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    try:
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def from_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, tolerating a trailing 'Z'."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _plain(value: Any) -> Any:
    if isinstance(value, ChatEvent):
        return value.to_dict()
    if isinstance(value, MessageSegment):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class MessageSegment:
    """One run of a message body: plain text, or an emoji with an image."""
    text: str = ""
    emoji_id: Optional[str] = None
    image_url: Optional[str] = None
    shortcut: Optional[str] = None

    @property
    def is_emoji(self) -> bool:
        return self.emoji_id is not None or self.image_url is not None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ChatEvent:
    """Base for every event a client emits."""
    platform: Platform
    room_id: str
    event_id: str
    occurred_at: Optional[datetime] = None
    raw: Optional[Any] = None

    kind: ClassVar[EventKind]

    def to_dict(self) -> Dict[str, Any]:
        """Render the event as a JSON-ready dictionary."""
        data: Dict[str, Any] = {"kind": self.kind.value}
        for f in fields(self):
            data[f.name] = _plain(getattr(self, f.name))
        return data


@dataclass
class MessageEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.MESSAGE

    author: str = ""
    text: str = ""
    author_id: Optional[str] = None
    color: Optional[str] = None
    badges: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    emotes: List[Dict[str, Any]] = field(default_factory=list)
    segments: List[MessageSegment] = field(default_factory=list)
    is_history: bool = False
    is_whisper: bool = False
    is_moderator: bool = False
    is_subscriber: bool = False


@dataclass
class UserEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.USER

    action: UserAction = UserAction.JOIN
    nick: str = ""
    roles: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)


@dataclass
class ModerationEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.MODERATION

    action: ModerationAction = ModerationAction.MUTE
    actor: Optional[str] = None
    target: Optional[str] = None
    duration: Optional[float] = None
    enabled: Optional[bool] = None
    text: Optional[str] = None


@dataclass
class PollEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.POLL

    phase: PollPhase = PollPhase.START
    question: Optional[str] = None
    options: List[str] = field(default_factory=list)
    totals: List[int] = field(default_factory=list)
    total_votes: Optional[int] = None
    vote: Optional[str] = None
    quantity: Optional[int] = None
    weighted: Optional[bool] = None
    author: Optional[str] = None
    duration: Optional[float] = None


@dataclass
class MonetaryEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.MONETARY

    action: MonetaryAction = MonetaryAction.SUBSCRIPTION
    nick: Optional[str] = None
    text: Optional[str] = None
    amount: Optional[float] = None
    tier: Optional[int] = None
    tier_label: Optional[str] = None
    quantity: Optional[int] = None
    recipient: Optional[str] = None
    streak: Optional[int] = None


@dataclass
class NoticeEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.NOTICE

    notice: NoticeType = NoticeType.BROADCAST
    text: Optional[str] = None
    nick: Optional[str] = None
    data: Optional[Any] = None


@dataclass
class HistoryEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.HISTORY

    items: List[ChatEvent] = field(default_factory=list)


@dataclass
class StatusEvent(ChatEvent):
    kind: ClassVar[EventKind] = EventKind.STATUS

    status: ConnectionStatus = ConnectionStatus.CONNECTING
    attempt: int = 0
    delay_ms: Optional[int] = None
    code: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class SendResult:
    """Outcome of a write-path call. Never raised, always returned."""
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "SendResult":
        return cls(True)

    @classmethod
    def fail(cls, error: str) -> "SendResult":
        return cls(False, error)


AnyEvent = Union[
    MessageEvent, UserEvent, ModerationEvent, PollEvent,
    MonetaryEvent, NoticeEvent, HistoryEvent, StatusEvent,
]
