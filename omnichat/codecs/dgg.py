"""
Codec for the destiny.gg chat line protocol.

Every server frame is ``TYPE payload`` where ``payload`` is JSON or absent.
``HISTORY`` carries a JSON array whose elements are frames of the same shape.
"""

import hashlib
import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..events import (
    ChatEvent, HistoryEvent, MessageEvent, ModerationAction, ModerationEvent,
    MonetaryAction, MonetaryEvent, NoticeEvent, NoticeType, Platform, PollEvent,
    PollPhase, UserAction, UserEvent, from_epoch_ms,
)
from ..exceptions import FrameDecodeError, ProtocolError, UnsupportedFrameError

ROOM_ID = "dgg"
PREVIEW_LIMIT = 2000

_TOKEN_RE = re.compile(r"^([A-Z][A-Z_]*)(.*)$", re.DOTALL)

# Tokens whose payload must be a JSON object
_OBJECT_TOKENS = {
    "MSG", "JOIN", "QUIT", "UPDATEUSER", "NAMES", "PIN", "MUTE", "UNMUTE",
    "BAN", "UNBAN", "SUBONLY", "DEATH", "POLLSTART", "VOTECAST", "POLLSTOP",
    "VOTECOUNTED", "SUBSCRIPTION", "GIFTSUB", "MASSGIFT", "DONATION",
    "BROADCAST", "PRIVMSG",
}


def split_frame(raw: str) -> Tuple[str, str]:
    """Split a frame into its type token and trimmed payload."""
    text = raw.strip()
    match = _TOKEN_RE.match(text)
    if match:
        return match.group(1), match.group(2).strip()
    token = text.split(" ", 1)[0] or "UNKNOWN"
    return token, text[len(token):].strip()


def parse_payload(token: str, payload: str) -> Any:
    """
    Decode a frame payload.

    Object payloads are read from the first ``{`` so extra spacing or stray
    text between the token and the JSON does not yield an empty document.
    """
    text = payload.strip()
    if not text or text == "null":
        return None
    if token in _OBJECT_TOKENS and not text.startswith("{"):
        start = text.find("{")
        if start == -1:
            raise FrameDecodeError(f"{token} payload has no JSON object", token, payload[:PREVIEW_LIMIT])
        text = text[start:]
    try:
        return json.loads(text)
    except ValueError as e:
        raise FrameDecodeError(f"Failed to parse {token}: {e}", token, payload[:PREVIEW_LIMIT]) from e


def _hash(*parts: Any) -> str:
    digest = hashlib.sha1("\x00".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return digest[:16]


def synthesize_event_id(token: str, data: Any) -> str:
    """Stable id for a frame: its uuid when present, else a content hash."""
    if isinstance(data, dict):
        uuid = data.get("uuid") or data.get("messageid")
        if uuid:
            return f"{token}:{uuid}"
        return f"{token}:{data.get('timestamp', '')}:{_hash(data.get('nick', ''), data.get('data', ''))}"
    return f"{token}:{_hash(json.dumps(data, sort_keys=True, default=str))}"


def _obj(data: Any) -> Dict[str, Any]:
    return data if isinstance(data, dict) else {}


def _num(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _nick(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("nick") or value.get("username")
    return value if isinstance(value, str) else None


def _message(token: str, data: Any, room_id: str) -> MessageEvent:
    data = _obj(data)
    roles = list(data.get("roles") or [])
    features = list(data.get("features") or [])
    flags = set(roles) | set(features)
    author_id = data.get("id")
    return MessageEvent(
        platform=Platform.DGG,
        room_id=room_id,
        event_id=synthesize_event_id(token, data),
        occurred_at=from_epoch_ms(data.get("timestamp")),
        raw=data,
        author=data.get("nick", ""),
        text=data.get("data", ""),
        author_id=str(author_id) if author_id is not None else None,
        badges=features,
        roles=roles,
        is_whisper=token == "PRIVMSG",
        is_moderator=bool(flags & {"moderator", "admin"}),
        is_subscriber="subscriber" in flags or bool(data.get("subscription")),
    )


def _user(action: UserAction) -> Callable:
    def handler(token: str, data: Any, room_id: str) -> UserEvent:
        data = _obj(data)
        return UserEvent(
            platform=Platform.DGG,
            room_id=room_id,
            event_id=synthesize_event_id(token, data),
            occurred_at=from_epoch_ms(data.get("timestamp")),
            raw=data,
            action=action,
            nick=data.get("nick", ""),
            roles=list(data.get("roles") or []),
            features=list(data.get("features") or []),
        )
    return handler


def _moderation(action: ModerationAction) -> Callable:
    def handler(token: str, data: Any, room_id: str) -> ModerationEvent:
        data = _obj(data)
        event = ModerationEvent(
            platform=Platform.DGG,
            room_id=room_id,
            event_id=synthesize_event_id(token, data),
            occurred_at=from_epoch_ms(data.get("timestamp")),
            raw=data,
            action=action,
            actor=data.get("nick"),
            target=data.get("data"),
            duration=_num(data.get("duration")),
        )
        if action == ModerationAction.SUBONLY:
            event.target = None
            event.enabled = data.get("data") == "on"
        elif action == ModerationAction.DEATH:
            # the nick is the user who died; data is the death message
            event.actor = None
            event.target = data.get("nick")
            event.text = data.get("data")
        return event
    return handler


def _poll(phase: PollPhase) -> Callable:
    def handler(token: str, data: Any, room_id: str) -> PollEvent:
        data = _obj(data)
        vote = data.get("vote")
        return PollEvent(
            platform=Platform.DGG,
            room_id=room_id,
            event_id=synthesize_event_id(token, data),
            occurred_at=from_epoch_ms(data.get("timestamp")),
            raw=data,
            phase=phase,
            question=data.get("question"),
            options=list(data.get("options") or []),
            totals=[t for t in (_int(t) for t in data.get("totals") or []) if t is not None],
            total_votes=_int(data.get("totalvotes")),
            vote=str(vote) if vote is not None else None,
            quantity=_int(data.get("quantity")),
            weighted=data.get("weighted"),
            author=data.get("nick"),
            duration=_num(data.get("time")),
        )
    return handler


def _monetary(action: MonetaryAction) -> Callable:
    def handler(token: str, data: Any, room_id: str) -> MonetaryEvent:
        data = _obj(data)
        nick = data.get("nick") or _nick(data.get("user"))
        return MonetaryEvent(
            platform=Platform.DGG,
            room_id=room_id,
            event_id=synthesize_event_id(token, data),
            occurred_at=from_epoch_ms(data.get("timestamp")),
            raw=data,
            action=action,
            nick=nick,
            text=data.get("data"),
            amount=_num(data.get("amount")),
            tier=_int(data.get("tier")),
            tier_label=data.get("tierLabel"),
            quantity=_int(data.get("quantity")),
            recipient=_nick(data.get("recipient") or data.get("giftee")),
            streak=_int(data.get("streak")),
        )
    return handler


def _notice(notice: NoticeType) -> Callable:
    def handler(token: str, data: Any, room_id: str) -> NoticeEvent:
        obj = _obj(data)
        text = obj.get("data") if obj else None
        if notice == NoticeType.ERROR:
            text = data if isinstance(data, str) else obj.get("description") or text
        elif notice in (NoticeType.NAMES, NoticeType.ME, NoticeType.PAID_EVENTS, NoticeType.REFRESH):
            text = None
        return NoticeEvent(
            platform=Platform.DGG,
            room_id=room_id,
            event_id=synthesize_event_id(token, data),
            occurred_at=from_epoch_ms(obj.get("timestamp")) if obj else None,
            raw=data,
            notice=notice,
            text=text if isinstance(text, str) else None,
            nick=obj.get("nick") if obj else None,
            data=data,
        )
    return handler


FRAME_HANDLERS: Dict[str, Callable[[str, Any, str], ChatEvent]] = {
    "MSG": _message,
    "PRIVMSG": _message,
    "JOIN": _user(UserAction.JOIN),
    "QUIT": _user(UserAction.QUIT),
    "UPDATEUSER": _user(UserAction.UPDATE),
    "NAMES": _notice(NoticeType.NAMES),
    "ME": _notice(NoticeType.ME),
    "PIN": _notice(NoticeType.PIN),
    "MUTE": _moderation(ModerationAction.MUTE),
    "UNMUTE": _moderation(ModerationAction.UNMUTE),
    "BAN": _moderation(ModerationAction.BAN),
    "UNBAN": _moderation(ModerationAction.UNBAN),
    "SUBONLY": _moderation(ModerationAction.SUBONLY),
    "DEATH": _moderation(ModerationAction.DEATH),
    "POLLSTART": _poll(PollPhase.START),
    "VOTECAST": _poll(PollPhase.VOTE),
    "POLLSTOP": _poll(PollPhase.STOP),
    "VOTECOUNTED": _poll(PollPhase.COUNTED),
    "PAIDEVENTS": _notice(NoticeType.PAID_EVENTS),
    "SUBSCRIPTION": _monetary(MonetaryAction.SUBSCRIPTION),
    "GIFTSUB": _monetary(MonetaryAction.GIFT),
    "MASSGIFT": _monetary(MonetaryAction.MASS_GIFT),
    "DONATION": _monetary(MonetaryAction.DONATION),
    "BROADCAST": _notice(NoticeType.BROADCAST),
    "RELOAD": _notice(NoticeType.RELOAD),
    "REFRESH": _notice(NoticeType.REFRESH),
    "ERR": _notice(NoticeType.ERROR),
}


def is_supported(token: str) -> bool:
    return token == "HISTORY" or token in FRAME_HANDLERS


def is_replayable(event: ChatEvent) -> bool:
    """Events the server may deliver twice (live and inside HISTORY)."""
    if isinstance(event, (MessageEvent, MonetaryEvent, ModerationEvent)):
        return True
    if isinstance(event, NoticeEvent):
        return event.notice in (NoticeType.BROADCAST, NoticeType.PIN)
    return False


def decode_frame(raw: str, room_id: str = ROOM_ID) -> ChatEvent:
    """
    Decode one frame into an event.

    Raises:
        UnsupportedFrameError: unknown type token
        FrameDecodeError: the payload is not valid JSON for its type
    """
    token, payload = split_frame(raw)
    if token == "HISTORY":
        event, _ = decode_history(payload, room_id)
        return event
    handler = FRAME_HANDLERS.get(token)
    if handler is None:
        raise UnsupportedFrameError(token, raw[:PREVIEW_LIMIT])
    return handler(token, parse_payload(token, payload), room_id)


def decode_history(payload: str, room_id: str = ROOM_ID) -> Tuple[HistoryEvent, List[ProtocolError]]:
    """
    Decode a ``HISTORY`` payload into one event with every item in wire order.

    Items that fail to decode are left out and returned alongside.
    """
    try:
        frames = json.loads(payload)
    except ValueError as e:
        raise FrameDecodeError(f"Failed to parse HISTORY: {e}", "HISTORY", payload[:PREVIEW_LIMIT]) from e
    if not isinstance(frames, list):
        raise FrameDecodeError("HISTORY payload is not an array", "HISTORY", payload[:PREVIEW_LIMIT])

    items: List[ChatEvent] = []
    errors: List[ProtocolError] = []
    for frame in frames:
        if not isinstance(frame, str):
            errors.append(FrameDecodeError("HISTORY item is not a string", "HISTORY", str(frame)[:PREVIEW_LIMIT]))
            continue
        token, _ = split_frame(frame)
        if token == "HISTORY":
            errors.append(UnsupportedFrameError(token, frame[:PREVIEW_LIMIT]))
            continue
        try:
            event = decode_frame(frame, room_id)
        except ProtocolError as e:
            errors.append(e)
            continue
        except Exception as e:
            errors.append(FrameDecodeError(f"Failed to decode HISTORY item: {e}", token, frame[:PREVIEW_LIMIT]))
            continue
        if isinstance(event, MessageEvent):
            event.is_history = True
        items.append(event)

    history = HistoryEvent(
        platform=Platform.DGG,
        room_id=room_id,
        event_id=f"HISTORY:{_hash(payload)}",
        occurred_at=next((e.occurred_at for e in reversed(items) if e.occurred_at), None),
        items=items,
    )
    return history, errors


def encode_message(text: str) -> str:
    return "MSG " + json.dumps({"data": text})


def encode_whisper(nick: str, text: str) -> str:
    return "PRIVMSG " + json.dumps({"nick": nick, "data": text})
