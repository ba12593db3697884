"""
IRC line codec for Twitch chat over WebSocket.

Grammar: ``[@tags ][:prefix ]COMMAND [params...] [:trailing]``.
"""

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..events import (
    MessageEvent, ModerationAction, ModerationEvent, MonetaryAction,
    MonetaryEvent, Platform, from_epoch_ms,
)
from ..exceptions import FrameDecodeError

ANONYMOUS_PASS = "SCHMOOPIIE"
CAPABILITIES = "twitch.tv/tags twitch.tv/commands twitch.tv/membership"

_TAG_UNESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass
class IrcMessage:
    command: str
    params: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    prefix: Optional[str] = None
    raw: str = ""

    @property
    def nick(self) -> Optional[str]:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]

    @property
    def channel(self) -> Optional[str]:
        if self.params and self.params[0].startswith("#"):
            return self.params[0][1:]
        return None

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def split_lines(frame: str) -> List[str]:
    """A WebSocket frame may carry several CRLF-terminated lines."""
    return [line for line in frame.replace("\r\n", "\n").split("\n") if line.strip()]


def _unescape(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            out.append(_TAG_UNESCAPES.get(value[i + 1], value[i + 1]))
            i += 2
            continue
        if ch != "\\":
            out.append(ch)
        i += 1
    return "".join(out)


def parse_tags(tag_string: str) -> Dict[str, str]:
    """Parse IRC tags into dictionary."""
    tags = {}
    for tag in tag_string.split(";"):
        if not tag:
            continue
        if "=" in tag:
            key, value = tag.split("=", 1)
            tags[key] = _unescape(value)
        else:
            tags[tag] = ""
    return tags


def parse_line(line: str) -> IrcMessage:
    rest = line.rstrip("\r\n")
    if not rest.strip():
        raise FrameDecodeError("Empty IRC line", None, line)

    tags: Dict[str, str] = {}
    if rest.startswith("@"):
        space = rest.find(" ")
        if space == -1:
            raise FrameDecodeError("IRC line has tags but no command", None, line[:2000])
        tags = parse_tags(rest[1:space])
        rest = rest[space + 1:].lstrip(" ")

    prefix = None
    if rest.startswith(":"):
        space = rest.find(" ")
        if space == -1:
            raise FrameDecodeError("IRC line has prefix but no command", None, line[:2000])
        prefix = rest[1:space]
        rest = rest[space + 1:].lstrip(" ")

    trailing = None
    if " :" in rest:
        rest, trailing = rest.split(" :", 1)
    elif rest.startswith(":"):
        rest, trailing = "", rest[1:]

    parts = rest.split()
    if not parts:
        raise FrameDecodeError("IRC line has no command", None, line[:2000])
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, tags=tags, prefix=prefix, raw=line)


def format_line(command: str, *params: str, trailing: Optional[str] = None) -> str:
    parts = [command, *params]
    if trailing is not None:
        parts.append(":" + trailing)
    return " ".join(parts)


def anonymous_nick() -> str:
    return f"justinfan{10000 + secrets.randbelow(990000)}"


def login_lines(nick: str, oauth_token: Optional[str] = None) -> List[str]:
    password = f"oauth:{oauth_token}" if oauth_token else ANONYMOUS_PASS
    return [
        format_line("CAP", "REQ", trailing=CAPABILITIES),
        format_line("PASS", password),
        format_line("NICK", nick),
    ]


def pong_for(line: str) -> str:
    """Echo a server PING payload back verbatim."""
    return "PONG" + line.strip()[4:]


def synthesize_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def extract_badges(tags: Dict[str, str]) -> List[str]:
    """Extract user badges from tags."""
    badges = []
    for badge in tags.get("badges", "").split(","):
        if badge:
            badges.append(badge.split("/")[0])
    return badges


def extract_emotes(tags: Dict[str, str]) -> List[Dict[str, Any]]:
    """
    Extract emote information from tags.

    Format: ``emote_id:start-end,start-end/emote_id:start-end``
    """
    emotes = []
    for emote_group in tags.get("emotes", "").split("/"):
        if ":" not in emote_group:
            continue
        emote_id, positions = emote_group.split(":", 1)
        for position in positions.split(","):
            if "-" not in position:
                continue
            start, end = position.split("-", 1)
            try:
                emotes.append({"id": emote_id, "start": int(start), "end": int(end)})
            except ValueError:
                continue
    return emotes


def privmsg_to_event(message: IrcMessage) -> MessageEvent:
    tags = message.tags
    nick = message.nick or ""
    text = message.trailing
    is_action = text.startswith("\x01ACTION ") and text.endswith("\x01")
    if is_action:
        text = text[8:-1]
    badges = extract_badges(tags)
    return MessageEvent(
        platform=Platform.TWITCH,
        room_id=(message.channel or "").lower(),
        event_id=tags.get("id") or synthesize_id(),
        occurred_at=from_epoch_ms(tags.get("tmi-sent-ts")),
        raw={"tags": tags, "line": message.raw, "action": is_action},
        author=tags.get("display-name") or nick,
        text=text,
        author_id=tags.get("user-id") or None,
        color=tags.get("color") or None,
        badges=badges,
        emotes=extract_emotes(tags),
        is_moderator=tags.get("mod") == "1" or "broadcaster" in badges,
        is_subscriber=tags.get("subscriber") == "1",
    )


_USERNOTICE_ACTIONS = {
    "sub": MonetaryAction.SUBSCRIPTION,
    "resub": MonetaryAction.SUBSCRIPTION,
    "subgift": MonetaryAction.GIFT,
    "anonsubgift": MonetaryAction.GIFT,
    "submysterygift": MonetaryAction.MASS_GIFT,
}


def _int_tag(tags: Dict[str, str], key: str) -> Optional[int]:
    try:
        return int(tags[key])
    except (KeyError, ValueError):
        return None


def usernotice_to_event(message: IrcMessage) -> Optional[MonetaryEvent]:
    """Subscription and gift notices. Other USERNOTICE kinds return None."""
    tags = message.tags
    action = _USERNOTICE_ACTIONS.get(tags.get("msg-id", ""))
    if action is None:
        return None
    plan = tags.get("msg-param-sub-plan", "")
    tier = int(plan) // 1000 if plan.isdigit() else (1 if plan == "Prime" else None)
    return MonetaryEvent(
        platform=Platform.TWITCH,
        room_id=(message.channel or "").lower(),
        event_id=tags.get("id") or synthesize_id(),
        occurred_at=from_epoch_ms(tags.get("tmi-sent-ts")),
        raw={"tags": tags, "line": message.raw},
        action=action,
        nick=tags.get("display-name") or tags.get("login") or message.nick,
        text=message.trailing if len(message.params) > 1 else tags.get("system-msg"),
        tier=tier,
        tier_label=tags.get("msg-param-sub-plan-name"),
        quantity=_int_tag(tags, "msg-param-mass-gift-count"),
        recipient=tags.get("msg-param-recipient-display-name") or None,
        streak=_int_tag(tags, "msg-param-cumulative-months"),
    )


def clearchat_to_event(message: IrcMessage) -> Optional[ModerationEvent]:
    """A CLEARCHAT naming a user is a timeout (with duration) or a ban."""
    if len(message.params) < 2:
        return None
    tags = message.tags
    duration = _int_tag(tags, "ban-duration")
    return ModerationEvent(
        platform=Platform.TWITCH,
        room_id=(message.channel or "").lower(),
        event_id=f"clearchat:{tags.get('tmi-sent-ts') or synthesize_id()}:{message.trailing}",
        occurred_at=from_epoch_ms(tags.get("tmi-sent-ts")),
        raw={"tags": tags, "line": message.raw},
        action=ModerationAction.MUTE if duration is not None else ModerationAction.BAN,
        target=message.trailing,
        duration=float(duration) if duration is not None else None,
    )
