"""
Codec for Kick's Pusher channels and its channel/history HTTP payloads.
"""

import json
import re
from typing import Any, Dict, List, Optional

from ..events import (
    MessageEvent, ModerationAction, ModerationEvent, MonetaryAction,
    MonetaryEvent, Platform, from_epoch_ms, from_iso,
)
from ..exceptions import FrameDecodeError

PING = "pusher:ping"
PONG = "pusher:pong"
SUBSCRIBE = "pusher:subscribe"
UNSUBSCRIBE = "pusher:unsubscribe"
CONNECTION_ESTABLISHED = "pusher:connection_established"
SUBSCRIPTION_SUCCEEDED = "pusher_internal:subscription_succeeded"
PUSHER_ERROR = "pusher:error"

CHAT_MESSAGE_EVENT = "App\\Events\\ChatMessageEvent"
USER_BANNED_EVENT = "App\\Events\\UserBannedEvent"
USER_UNBANNED_EVENT = "App\\Events\\UserUnbannedEvent"
SUBSCRIPTION_EVENT = "App\\Events\\SubscriptionEvent"
GIFTED_SUBSCRIPTIONS_EVENT = "App\\Events\\GiftedSubscriptionsEvent"

PREVIEW_LIMIT = 2000

_CHATROOM_PATTERNS = [
    re.compile(r'"chatroom_id"\s*:\s*(\d+)'),
    re.compile(r'"chatroomId"\s*:\s*(\d+)'),
    re.compile(r'"chatroom"\s*:\s*\{\s*"id"\s*:\s*(\d+)'),
    re.compile(r'chatroom_id\s*=\s*(\d+)'),
    re.compile(r'chatroomId\s*=\s*(\d+)'),
]
_CHATROOM_BRUTE = re.compile(r'chatroom(?:_id|Id)["\']?\s*[:=]\s*(\d{3,})', re.IGNORECASE)


def _get(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def positive_int(value: Any) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


def pusher_frame(event: str, data: Any = None, channel: Optional[str] = None) -> str:
    frame: Dict[str, Any] = {"event": event, "data": {} if data is None else data}
    if channel:
        frame["channel"] = channel
    return json.dumps(frame)


def subscribe_frame(channel: str) -> str:
    return pusher_frame(SUBSCRIBE, {"auth": "", "channel": channel})


def unsubscribe_frame(channel: str) -> str:
    return pusher_frame(UNSUBSCRIBE, {"channel": channel})


def pong_frame() -> str:
    return pusher_frame(PONG, {})


def parse_pusher_frame(raw: str) -> Dict[str, Any]:
    """Decode an outer ``{event, data, channel?}`` frame."""
    try:
        frame = json.loads(raw)
    except ValueError as e:
        raise FrameDecodeError(f"Non-JSON Pusher frame: {e}", None, raw[:PREVIEW_LIMIT]) from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise FrameDecodeError("Pusher frame without event name", None, raw[:PREVIEW_LIMIT])
    return frame


def event_data(frame: Dict[str, Any]) -> Any:
    """Return the inner payload; Pusher delivers it as a JSON string."""
    data = frame.get("data")
    if isinstance(data, str):
        try:
            return json.loads(data) if data else {}
        except ValueError as e:
            raise FrameDecodeError(
                f"Failed to parse {frame.get('event')} data: {e}", frame.get("event"), data[:PREVIEW_LIMIT]
            ) from e
    return data if data is not None else {}


def channel_names(chatroom_id: int, channel_id: Optional[int] = None) -> List[str]:
    """Every channel name that has carried a room's events over time."""
    names = [f"chatrooms.{chatroom_id}.v2", f"chatroom_{chatroom_id}", f"chatrooms.{chatroom_id}"]
    if channel_id:
        names.append(f"channel_{channel_id}")
    return names


def chatroom_id_from_channel(channel: str) -> int:
    match = re.match(r"^chatrooms?[._](\d+)", channel or "")
    return int(match.group(1)) if match else 0


def extract_chatroom_id_from_html(html: str) -> int:
    """Find a chatroom id embedded in a Kick page, or 0."""
    for pattern in _CHATROOM_PATTERNS:
        match = pattern.search(html)
        if match:
            value = positive_int(match.group(1))
            if value:
                return value
    match = _CHATROOM_BRUTE.search(html)
    if match:
        return positive_int(match.group(1))
    return 0


def read_chat_user_count(data: Any) -> Optional[int]:
    """Chat or viewer count from a channel payload; field names vary."""
    if not isinstance(data, dict):
        return None
    value = _first(
        data.get("chatters_count"),
        data.get("chattersCount"),
        data.get("viewers_count"),
        data.get("viewersCount"),
        _get(data, "chatroom", "users_online"),
        _get(data, "chatroom", "usersOnline"),
        _get(data, "chatroom", "viewers_count"),
        _get(data, "livestream", "viewer_count"),
        _get(data, "livestream", "viewers_count"),
    )
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return None
    return int(value)


def parse_chatroom_payload(data: Any) -> Dict[str, Any]:
    """``/channels/{slug}/chatroom`` returns the chatroom itself."""
    return {
        "chatroom_id": positive_int(_get(data, "id")),
        "channel_id": 0,
        "chat_user_count": read_chat_user_count(data),
    }


def parse_channel_info(data: Any) -> Dict[str, Any]:
    """Pull channel and chatroom ids out of a ``/channels/{slug}`` payload."""
    channel_id = positive_int(_first(
        _get(data, "id"),
        _get(data, "channel_id"),
        _get(data, "channelId"),
        _get(data, "channel", "id"),
        _get(data, "channel", "channel_id"),
    ))
    chatroom_id = positive_int(_first(
        _get(data, "chatroom", "id"),
        _get(data, "chatroom_id"),
        _get(data, "chatroomId"),
        _get(data, "livestream", "chatroom_id"),
        _get(data, "livestream", "chatroom", "id"),
    ))
    return {
        "chatroom_id": chatroom_id,
        "channel_id": channel_id,
        "chat_user_count": read_chat_user_count(data),
    }


def find_history_array(payload: Any) -> Optional[List[Any]]:
    for candidate in (
        _get(payload, "data", "messages"),
        _get(payload, "data"),
        _get(payload, "messages"),
        _get(payload, "history"),
        payload,
    ):
        if isinstance(candidate, list):
            return candidate
    return None


def _range(item: Dict[str, Any]):
    start = _first(item.get("start"), item.get("from"), item.get("begin"))
    end = _first(item.get("end"), item.get("to"), item.get("finish"))
    try:
        start, end = int(start), int(end)
    except (TypeError, ValueError):
        return None
    if start < 0 or end <= start:
        return None
    return start, end


def extract_emotes(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Emote references from any of the shapes Kick has used."""
    candidates = [
        raw.get("emotes"),
        raw.get("emoticons"),
        _get(raw, "message", "emotes"),
        _get(raw, "message", "emoticons"),
    ]
    listed = next((c for c in candidates if isinstance(c, list)), None)

    if listed is None and isinstance(raw.get("content"), list):
        emotes = []
        offset = 0
        for fragment in raw["content"]:
            if not isinstance(fragment, dict):
                continue
            kind = str(_first(fragment.get("type"), fragment.get("kind"), "")).lower()
            text = fragment.get("content") if isinstance(fragment.get("content"), str) else str(fragment.get("text") or "")
            if kind in ("emote", "emoticon"):
                emote_id = positive_int(_first(fragment.get("id"), fragment.get("emote_id"), fragment.get("emoticon_id")))
                if emote_id:
                    emotes.append({
                        "id": emote_id,
                        "name": fragment.get("name") if isinstance(fragment.get("name"), str) else None,
                        "start": offset,
                        "end": offset + len(text),
                    })
            offset += len(text)
        return emotes

    emotes = []
    for item in listed or []:
        if not isinstance(item, dict):
            continue
        emote_id = positive_int(_first(item.get("id"), item.get("emote_id"), item.get("emoticon_id")))
        if not emote_id:
            continue
        name = item.get("name") if isinstance(item.get("name"), str) else item.get("code") if isinstance(item.get("code"), str) else None
        if isinstance(item.get("positions"), list):
            for position in item["positions"]:
                if isinstance(position, dict):
                    span = _range(position)
                    if span:
                        emotes.append({"id": emote_id, "name": name, "start": span[0], "end": span[1]})
            continue
        span = _range(item)
        emote = {"id": emote_id, "name": name}
        if span:
            emote["start"], emote["end"] = span
        emotes.append(emote)
    return emotes


def extract_badges(sender: Dict[str, Any]) -> List[str]:
    """Badge types from ``sender.identity.badges``."""
    badges = []
    for badge in _get(sender, "identity", "badges") or []:
        if isinstance(badge, dict) and badge.get("type"):
            badges.append(badge["type"])
    return badges


def _content_text(raw: Dict[str, Any]) -> str:
    content = raw.get("content")
    if isinstance(content, list):
        parts = []
        for fragment in content:
            if isinstance(fragment, dict):
                text = fragment.get("content") if isinstance(fragment.get("content"), str) else fragment.get("text")
                parts.append(text if isinstance(text, str) else "")
            elif fragment is not None:
                parts.append(str(fragment))
        return "".join(parts)
    value = _first(content, raw.get("message"), raw.get("body"))
    return "" if value is None or isinstance(value, dict) else str(value)


def _timestamp(raw: Dict[str, Any]):
    value = _first(raw.get("created_at"), raw.get("createdAt"), raw.get("timestamp"))
    if isinstance(value, dict):
        value = value.get("date")
    if isinstance(value, (int, float)):
        return from_epoch_ms(value if value > 1e11 else value * 1000)
    return from_iso(value)


def normalize_message(raw: Any, room_id: str, is_history: bool = False) -> Optional[MessageEvent]:
    """
    Convert a live or history message payload into a ``MessageEvent``.

    Payloads without an id or without text are dropped.
    """
    if not isinstance(raw, dict):
        return None
    message_id = _first(raw.get("id"), raw.get("message_id"))
    text = _content_text(raw)
    if message_id in (None, "") or not text:
        return None

    sender = _first(raw.get("sender"), raw.get("user"), raw.get("author"))
    sender = sender if isinstance(sender, dict) else {}
    badges = extract_badges(sender)
    color = _get(sender, "identity", "color")
    author_id = sender.get("id")
    return MessageEvent(
        platform=Platform.KICK,
        room_id=room_id,
        event_id=str(message_id),
        occurred_at=_timestamp(raw),
        raw=raw,
        author=str(sender.get("username") or sender.get("slug") or sender.get("name") or "unknown"),
        text=text,
        author_id=str(author_id) if author_id is not None else None,
        color=color if isinstance(color, str) else None,
        badges=badges,
        emotes=extract_emotes(raw),
        is_history=is_history,
        is_moderator="moderator" in badges or "broadcaster" in badges,
        is_subscriber="subscriber" in badges or "founder" in badges,
    )


def _username(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("username") or value.get("slug")
    return value if isinstance(value, str) else None


def ban_event(data: Dict[str, Any], room_id: str, banned: bool = True) -> ModerationEvent:
    expires = from_iso(data.get("expires_at"))
    duration = data.get("duration")
    return ModerationEvent(
        platform=Platform.KICK,
        room_id=room_id,
        event_id=str(data.get("id") or f"{'ban' if banned else 'unban'}:{_username(data.get('user'))}:{data.get('expires_at')}"),
        raw=data,
        action=ModerationAction.BAN if banned else ModerationAction.UNBAN,
        actor=_username(_first(data.get("banned_by"), data.get("unbanned_by"))),
        target=_username(data.get("user")),
        duration=float(duration) * 60 if isinstance(duration, (int, float)) else None,
        text="permanent" if data.get("permanent") else (expires.isoformat() if expires else None),
    )


def subscription_event(data: Dict[str, Any], room_id: str) -> MonetaryEvent:
    months = data.get("months")
    return MonetaryEvent(
        platform=Platform.KICK,
        room_id=room_id,
        event_id=str(data.get("id") or f"sub:{data.get('username')}:{months}"),
        raw=data,
        action=MonetaryAction.SUBSCRIPTION,
        nick=data.get("username"),
        streak=months if isinstance(months, int) else None,
    )


def gifted_subscriptions_event(data: Dict[str, Any], room_id: str) -> MonetaryEvent:
    recipients = [r for r in data.get("gifted_usernames") or [] if isinstance(r, str)]
    return MonetaryEvent(
        platform=Platform.KICK,
        room_id=room_id,
        event_id=str(data.get("id") or f"gift:{data.get('gifter_username')}:{','.join(recipients)}"),
        raw=data,
        action=MonetaryAction.GIFT if len(recipients) == 1 else MonetaryAction.MASS_GIFT,
        nick=data.get("gifter_username"),
        quantity=len(recipients),
        recipient=recipients[0] if len(recipients) == 1 else None,
    )
