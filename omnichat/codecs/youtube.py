"""
Codec for YouTube's InnerTube live chat.

Covers page scraping for the bootstrap values, continuation responses,
message renderers and the send-message parameters.
"""

import json
import re
import secrets
import string
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..events import MessageEvent, MessageSegment, Platform, from_epoch_ms
from ..exceptions import FrameDecodeError

YTCFG_MARKER = "ytcfg.set("
INITIAL_DATA_MARKERS = ('var ytInitialData = ', 'window["ytInitialData"] = ', 'ytInitialData = ')

_CONTINUATION_RE = re.compile(r'"(?:continuation|token)"\s*:\s*"([^"]{20,})"')
_API_KEY_RE = re.compile(r'"INNERTUBE_API_KEY":"([^"]+)"')
_CONTEXT_RE = re.compile(r'"INNERTUBE_CONTEXT":(\{[\s\S]*?\})\s*,\s*"INNERTUBE_CONTEXT_CLIENT_NAME"')
_NON_BASE64_RE = re.compile(r"[^A-Za-z0-9+/=]")

_CLIENT_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
_CONTINUATION_KINDS = ("invalidationContinuationData", "timedContinuationData", "reloadContinuationData")
_ITEM_PATHS = (
    ("addChatItemAction", "item"),
    ("addLiveChatTickerItemAction", "item"),
    ("replaceChatItemAction", "replacementItem"),
)
_RENDERERS = ("liveChatTextMessageRenderer", "liveChatPaidMessageRenderer", "liveChatMembershipItemRenderer")
_RUN_FIELDS = ("message", "headerSubtext", "primaryText", "text")


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_balanced_json(source: str, start: int = 0) -> Optional[Tuple[Any, int]]:
    """
    Parse the first balanced ``{...}`` object at or after ``start``.

    Returns ``(value, end_index)``, or None when no complete, valid object
    is found.
    """
    begin = source.find("{", start)
    if begin == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(begin, len(source)):
        ch = source[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(source[begin:i + 1]), i + 1
                except ValueError:
                    return None
    return None


def find_first_continuation(data: Any) -> Optional[str]:
    """Breadth-first search for the first usable continuation token."""
    queue = deque([data])
    seen = set()
    while queue:
        current = queue.popleft()
        if not isinstance(current, (dict, list)) or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, dict):
            for kind in _CONTINUATION_KINDS:
                holder = current.get(kind)
                if isinstance(holder, dict) and isinstance(holder.get("continuation"), str):
                    return holder["continuation"]
            token = current.get("continuation")
            if isinstance(token, str) and len(token) > 10:
                return token
            children = current.values()
        else:
            children = current
        queue.extend(v for v in children if isinstance(v, (dict, list)))
    return None


def _marker_json(html: str, marker: str) -> Any:
    index = html.find(marker)
    if index == -1:
        return None
    parsed = extract_balanced_json(html, index + len(marker))
    return parsed[0] if parsed else None


def scrape_init_values(html: str) -> Dict[str, Any]:
    """
    Pull ``api_key``, ``context`` and ``continuation`` out of a page.

    Missing values are left as None; the caller decides whether to try
    another page.
    """
    values: Dict[str, Any] = {"api_key": None, "context": None, "continuation": None}

    ytcfg = _marker_json(html, YTCFG_MARKER)
    if isinstance(ytcfg, dict):
        if isinstance(ytcfg.get("INNERTUBE_API_KEY"), str):
            values["api_key"] = ytcfg["INNERTUBE_API_KEY"]
        if isinstance(ytcfg.get("INNERTUBE_CONTEXT"), dict):
            values["context"] = ytcfg["INNERTUBE_CONTEXT"]

    for marker in INITIAL_DATA_MARKERS:
        initial = _marker_json(html, marker)
        if initial is not None:
            values["continuation"] = find_first_continuation(initial)
            break

    if not values["continuation"]:
        match = _CONTINUATION_RE.search(html)
        if match:
            values["continuation"] = match.group(1)
    if not values["api_key"]:
        match = _API_KEY_RE.search(html)
        if match:
            values["api_key"] = match.group(1)
    if not values["context"]:
        match = _CONTEXT_RE.search(html)
        if match:
            try:
                values["context"] = json.loads(match.group(1))
            except ValueError:
                pass
    return values


def emoji_image_url(emoji_id: str) -> str:
    emoji_id = str(emoji_id).strip()
    return f"https://yt3.ggpht.com/{emoji_id}=s48-c" if emoji_id else ""


def _shortcut(emoji: Dict[str, Any]) -> Optional[str]:
    shortcuts = emoji.get("shortcuts")
    if isinstance(shortcuts, list) and shortcuts and isinstance(shortcuts[0], str):
        return shortcuts[0]
    return None


def runs_to_text(runs: Any) -> str:
    if not isinstance(runs, list):
        return ""
    out = []
    for run in runs:
        if not isinstance(run, dict):
            continue
        if isinstance(run.get("text"), str):
            out.append(run["text"])
            continue
        emoji = run.get("emoji")
        if isinstance(emoji, dict):
            if _shortcut(emoji):
                out.append(_shortcut(emoji))
            elif isinstance(emoji.get("emojiId"), str):
                out.append(f":{emoji['emojiId']}:")
            else:
                out.append(":emoji:")
    return "".join(out)


def runs_to_segments(runs: Any) -> List[MessageSegment]:
    """Text runs stay text; emoji runs keep their id and an image URL."""
    if not isinstance(runs, list):
        return []
    segments = []
    for run in runs:
        if not isinstance(run, dict):
            continue
        if isinstance(run.get("text"), str):
            segments.append(MessageSegment(text=run["text"]))
            continue
        emoji = run.get("emoji")
        if not isinstance(emoji, dict) or not isinstance(emoji.get("emojiId"), str):
            continue
        shortcut = _shortcut(emoji)
        thumbnails = _dict(emoji.get("image")).get("thumbnails")
        if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], dict) and isinstance(thumbnails[0].get("url"), str):
            image_url = thumbnails[0]["url"]
        else:
            image_url = emoji_image_url(emoji["emojiId"])
        if image_url:
            segments.append(MessageSegment(
                text=shortcut or f":{emoji['emojiId']}:",
                emoji_id=emoji["emojiId"],
                image_url=image_url,
                shortcut=shortcut,
            ))
        else:
            segments.append(MessageSegment(text=shortcut or f":{emoji['emojiId']}:"))
    return segments


def _author_badges(renderer: Dict[str, Any]) -> Tuple[List[str], bool]:
    badges = []
    moderator = False
    author_badges = renderer.get("authorBadges")
    for badge in author_badges if isinstance(author_badges, list) else []:
        inner = badge.get("liveChatAuthorBadgeRenderer") if isinstance(badge, dict) else None
        if not isinstance(inner, dict):
            continue
        icon = _dict(inner.get("icon")).get("iconType")
        if icon in ("MODERATOR", "OWNER"):
            moderator = True
        label = inner.get("tooltip") or icon
        if isinstance(label, str):
            badges.append(label)
    return badges, moderator


def normalize_action(video_id: str, action: Any) -> Optional[MessageEvent]:
    """Normalize one chat action, or None when it carries no chat message."""
    if not isinstance(action, dict):
        return None
    item = None
    for outer, inner in _ITEM_PATHS:
        holder = action.get(outer)
        if isinstance(holder, dict) and isinstance(holder.get(inner), dict):
            item = holder[inner]
            break
    if item is None:
        return None
    renderer_name = next((name for name in _RENDERERS if isinstance(item.get(name), dict)), None)
    if renderer_name is None:
        return None
    renderer = item[renderer_name]

    runs = next(
        (renderer[f]["runs"] for f in _RUN_FIELDS
         if isinstance(renderer.get(f), dict) and isinstance(renderer[f].get("runs"), list)),
        [],
    )
    text = runs_to_text(runs)
    if not text:
        return None

    author = _dict(renderer.get("authorName")).get("simpleText")
    author = author if isinstance(author, str) else None
    author_id = renderer.get("authorExternalChannelId")
    timestamp_usec = renderer.get("timestampUsec")
    message_id = renderer.get("id") if isinstance(renderer.get("id"), str) else ""
    if not message_id:
        message_id = f"{timestamp_usec or ''}-{author or 'unknown'}-{text[:20]}"
    segments = runs_to_segments(runs)
    badges, moderator = _author_badges(renderer)
    occurred_at = None
    if isinstance(timestamp_usec, str) and timestamp_usec.isdigit():
        occurred_at = from_epoch_ms(int(timestamp_usec) / 1000)

    return MessageEvent(
        platform=Platform.YOUTUBE,
        room_id=video_id,
        event_id=message_id,
        occurred_at=occurred_at,
        raw=renderer,
        author=author or "unknown",
        text=text,
        author_id=author_id if isinstance(author_id, str) else None,
        badges=badges,
        segments=segments if any(s.is_emoji for s in segments) else [],
        is_moderator=moderator,
        is_subscriber=renderer_name == "liveChatMembershipItemRenderer" or any("Member" in b for b in badges),
    )


def extract_messages(
    video_id: str,
    actions: Any,
    on_error: Optional[Callable[[Any, Exception], None]] = None,
) -> List[MessageEvent]:
    """
    Normalize chat actions. Unknown action or renderer shapes are skipped.

    With ``on_error`` set, an action that fails to normalize is reported to
    it and skipped; otherwise the error propagates.
    """
    events: List[MessageEvent] = []
    if not isinstance(actions, list):
        return events
    for action in actions:
        try:
            event = normalize_action(video_id, action)
        except Exception as e:
            if on_error is None:
                raise
            on_error(action, e)
            continue
        if event is not None:
            events.append(event)
    return events


def parse_continuation(payload: Any) -> Tuple[List[Any], Optional[str], Optional[int]]:
    """
    Return ``(actions, next_continuation, timeout_ms)`` from a poll response.

    Raises:
        FrameDecodeError: the response is not a JSON object
    """
    if not isinstance(payload, dict):
        raise FrameDecodeError("Poll response is not an object", "get_live_chat", str(payload)[:300])
    live = _dict(_dict(payload.get("continuationContents")).get("liveChatContinuation"))
    actions = live.get("actions") if isinstance(live.get("actions"), list) else []
    continuations = live.get("continuations")
    if not isinstance(continuations, list) or not continuations or not isinstance(continuations[0], dict):
        return actions, None, None
    first = continuations[0]
    for kind in _CONTINUATION_KINDS:
        data = first.get(kind)
        if isinstance(data, dict) and isinstance(data.get("continuation"), str) and data["continuation"]:
            try:
                timeout_ms = int(data.get("timeoutMs")) or None
            except (TypeError, ValueError, OverflowError):
                timeout_ms = None
            return actions, data["continuation"], timeout_ms
    return actions, None, None


def clamp_multiplier(value: float) -> float:
    return max(0.25, min(5.0, float(value)))


def compute_poll_delay(
    timeout_ms: Optional[int],
    multiplier: float = 1.0,
    minimum: int = 250,
    maximum: int = 15000,
    default: int = 1000,
) -> int:
    """Next poll delay in ms: the server hint scaled, then clamped."""
    base = timeout_ms if timeout_ms and timeout_ms > 0 else default
    return min(max(int(base * multiplier), minimum), maximum)


def normalize_params_base64(raw: str) -> str:
    """Convert a base64url continuation to padded standard base64."""
    text = re.sub(r"\s", "", str(raw or ""))
    text = text.replace("-", "+").replace("_", "/")
    text = _NON_BASE64_RE.sub("", text)
    if len(text) % 4:
        text += "=" * (4 - len(text) % 4)
    return text


def generate_client_message_id() -> str:
    return "".join(secrets.choice(_CLIENT_ID_ALPHABET) for _ in range(24))


def send_message_body(context: Dict[str, Any], continuation: str, text: str) -> Dict[str, Any]:
    return {
        "context": context,
        "params": normalize_params_base64(continuation),
        "clientMessageId": generate_client_message_id(),
        "richMessage": {"textSegments": [{"text": text}]},
    }
