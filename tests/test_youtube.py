import base64
import json
from unittest.mock import AsyncMock

import pytest

from omnichat.clients.youtube import YouTubeChatClient
from omnichat.codecs import youtube as yt
from omnichat.events import MessageEvent, NoticeEvent, NoticeType
from omnichat.exceptions import ApiError, FrameDecodeError

from .conftest import RecordingSleep, next_event, wait_until

VIDEO = "dQw4w9WgXcQ"

LIVE_CHAT_HTML = (
    '<script>ytcfg.set({"INNERTUBE_API_KEY":"key123","INNERTUBE_CONTEXT":{"client":{"clientName":"WEB",'
    '"clientVersion":"2.0"}}});</script>'
    '<script>window["ytInitialData"] = {"contents":{"liveChatRenderer":{"continuations":'
    '[{"invalidationContinuationData":{"continuation":"init-cont","timeoutMs":5000}}]}}};</script>'
)


def text_action(message_id, text, author="viewer", usec="1700000000000000"):
    return {"addChatItemAction": {"item": {"liveChatTextMessageRenderer": {
        "id": message_id,
        "message": {"runs": [{"text": text}]},
        "authorName": {"simpleText": author},
        "timestampUsec": usec,
    }}}}


def poll_response(actions, continuation="next-cont", timeout_ms=4000):
    return {"continuationContents": {"liveChatContinuation": {
        "actions": actions,
        "continuations": [{"timedContinuationData": {"continuation": continuation, "timeoutMs": timeout_ms}}],
    }}}


@pytest.mark.parametrize(
    "timeout_ms, multiplier, expected",
    [
        (4000, 1.0, 4000),
        (4000, 0.5, 2000),
        (100, 1.0, 250),
        (60000, 1.0, 15000),
        (None, 1.0, 1000),
        (0, 2.0, 2000),
    ],
)
def test_compute_poll_delay(timeout_ms, multiplier, expected):
    assert yt.compute_poll_delay(timeout_ms, multiplier) == expected


def test_clamp_multiplier():
    assert yt.clamp_multiplier(10) == 5.0
    assert yt.clamp_multiplier(0.1) == 0.25
    assert yt.clamp_multiplier(1.5) == 1.5


def test_params_are_standard_base64():
    params = yt.normalize_params_base64("ab-c_d")

    assert params == "ab+c/d=="
    assert base64.b64decode(params)


def test_send_body():
    body = yt.send_message_body({"client": {}}, "Zm9v_-", "hello")

    assert body["params"] == "Zm9v/+=="
    assert body["richMessage"] == {"textSegments": [{"text": "hello"}]}
    assert len(body["clientMessageId"]) == 24


def test_scrape_init_values():
    values = yt.scrape_init_values(LIVE_CHAT_HTML)

    assert values["api_key"] == "key123"
    assert values["context"]["client"]["clientName"] == "WEB"
    assert values["continuation"] == "init-cont"


def test_scrape_with_regex_fallback():
    html = '"INNERTUBE_API_KEY":"k2" ... "continuation":"abcdefghijklmnopqrstuvwxyz"'

    values = yt.scrape_init_values(html)

    assert values["api_key"] == "k2"
    assert values["continuation"] == "abcdefghijklmnopqrstuvwxyz"
    assert values["context"] is None


def test_balanced_json_ignores_braces_in_strings():
    value, end = yt.extract_balanced_json('x = {"a": "}{", "b": {"c": 1}} tail')

    assert value == {"a": "}{", "b": {"c": 1}}
    assert 'x = {"a": "}{", "b": {"c": 1}} tail'[end:] == " tail"


def test_emoji_runs_become_segments():
    action = {"addChatItemAction": {"item": {"liveChatTextMessageRenderer": {
        "id": "e1",
        "message": {"runs": [
            {"text": "hi "},
            {"emoji": {"emojiId": "UCabc/xyz", "shortcuts": [":wave:"],
                       "image": {"thumbnails": [{"url": "https://example.com/wave.png"}]}}},
        ]},
        "authorName": {"simpleText": "viewer"},
    }}}}

    event = yt.extract_messages(VIDEO, [action])[0]

    assert event.text == "hi :wave:"
    assert [s.text for s in event.segments] == ["hi ", ":wave:"]
    assert event.segments[1].image_url == "https://example.com/wave.png"
    assert event.segments[1].emoji_id == "UCabc/xyz"


def test_plain_message_has_no_segments_and_fallback_id():
    action = text_action("", "plain text")

    event = yt.extract_messages(VIDEO, [action])[0]

    assert event.segments == []
    assert event.event_id == "1700000000000000-viewer-plain text"
    assert event.occurred_at.year == 2023


def test_unknown_actions_are_skipped():
    actions = [{"markChatItemAsDeletedAction": {}}, {"addChatItemAction": {"item": {"somethingElse": {}}}}]

    assert yt.extract_messages(VIDEO, actions) == []


def test_parse_continuation():
    actions, continuation, timeout_ms = yt.parse_continuation(poll_response([text_action("a", "x")]))

    assert len(actions) == 1
    assert continuation == "next-cont"
    assert timeout_ms == 4000


def test_parse_continuation_rejects_non_object_response():
    with pytest.raises(FrameDecodeError):
        yt.parse_continuation(["unexpected"])


def test_nested_values_of_the_wrong_type_are_tolerated():
    action = {"addChatItemAction": {"item": {"liveChatTextMessageRenderer": {
        "id": "odd",
        "message": {"runs": [
            {"text": "hey "},
            {"emoji": {"emojiId": "UCabc/xyz", "image": ["not", "a", "dict"]}},
        ]},
        "authorName": "plain string",
        "authorBadges": [{"liveChatAuthorBadgeRenderer": {"icon": "MODERATOR", "tooltip": "Moderator"}}],
        "authorExternalChannelId": 42,
    }}}}

    event = yt.extract_messages(VIDEO, [action])[0]

    assert event.author == "unknown"
    assert event.author_id is None
    assert event.badges == ["Moderator"]
    assert not event.is_moderator
    assert event.segments[1].image_url == yt.emoji_image_url("UCabc/xyz")


def test_failing_action_goes_to_error_callback(monkeypatch):
    normalize = yt.normalize_action

    def flaky(video_id, action):
        if action.get("boom"):
            raise AttributeError("bad shape")
        return normalize(video_id, action)

    monkeypatch.setattr(yt, "normalize_action", flaky)
    failures = []
    actions = [{"boom": True}, text_action("m1", "kept")]

    events = yt.extract_messages(VIDEO, actions, on_error=lambda action, e: failures.append(str(e)))

    assert [e.text for e in events] == ["kept"]
    assert failures == ["bad shape"]
    with pytest.raises(AttributeError):
        yt.extract_messages(VIDEO, actions)


def test_normalize_target_extracts_video_id():
    client = YouTubeChatClient()

    assert client.normalize_target(f"https://www.youtube.com/watch?v={VIDEO}&t=1") == VIDEO
    assert client.normalize_target(f"https://youtu.be/{VIDEO}") == VIDEO
    assert client.normalize_target(VIDEO) == VIDEO


async def polling_client(config, diagnostics, responses, html=LIVE_CHAT_HTML, limit=1):
    sleep = RecordingSleep(limit=limit)
    client = YouTubeChatClient(config, sleep=sleep, diagnostics=diagnostics)
    client._fetch_text = AsyncMock(return_value=html)
    client._post_json = AsyncMock(side_effect=responses)
    return client, sleep


@pytest.mark.asyncio
async def test_poll_uses_server_timeout(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([text_action("m1", "hello")])])

    await client.set_targets([VIDEO])
    event = await next_event(client.events, MessageEvent)
    await wait_until(lambda: sleep.delays)

    assert event.text == "hello"
    assert event.room_id == VIDEO
    assert sleep.delays == [4.0]
    assert client.states[VIDEO].next_delay_ms == 4000
    assert client.states[VIDEO].continuation == "next-cont"
    url, body, _ = client._post_json.await_args.args
    assert "key=key123" in url
    assert body["continuation"] == "init-cont"
    await client.close()


@pytest.mark.asyncio
async def test_delay_multiplier_is_clamped(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([], timeout_ms=4000)])

    await client.set_targets([VIDEO], delay_multiplier=100)
    await wait_until(lambda: sleep.delays)

    assert client.delay_multiplier == 5.0
    assert sleep.delays == [15.0]
    await client.close()


@pytest.mark.asyncio
async def test_poll_error_retries_same_continuation(config, diagnostics):
    responses = [ApiError("HTTP 500", status=500), poll_response([text_action("m1", "after")])]
    client, sleep = await polling_client(config, diagnostics, responses, limit=2)

    await client.set_targets([VIDEO])
    event = await next_event(client.events, MessageEvent)
    await wait_until(lambda: len(sleep.delays) == 2)

    assert event.text == "after"
    assert sleep.delays == [2.0, 4.0]
    first, second = client._post_json.await_args_list
    assert first.args[1]["continuation"] == second.args[1]["continuation"] == "init-cont"
    await client.close()


@pytest.mark.asyncio
async def test_duplicate_ids_across_polls_are_dropped(config, diagnostics):
    responses = [
        poll_response([text_action("m1", "one")], timeout_ms=1000),
        poll_response([text_action("m1", "one"), text_action("m2", "two")], timeout_ms=1000),
    ]
    client, sleep = await polling_client(config, diagnostics, responses, limit=2)

    await client.set_targets([VIDEO])
    first = await next_event(client.events, MessageEvent)
    second = await next_event(client.events, MessageEvent)

    assert [first.event_id, second.event_id] == ["m1", "m2"]
    await client.close()


@pytest.mark.asyncio
async def test_init_failure_drops_target(config, diagnostics):
    client, _ = await polling_client(config, diagnostics, [], html="<html>no chat here</html>")

    await client.set_targets([VIDEO])
    notice = await next_event(client.events, NoticeEvent)

    assert notice.notice == NoticeType.ERROR
    assert notice.room_id == VIDEO
    await wait_until(lambda: VIDEO not in client.targets)
    assert VIDEO not in client.states
    assert client._fetch_text.await_count == 2
    client._post_json.assert_not_awaited()
    await client.close()


@pytest.mark.asyncio
async def test_watch_page_fills_missing_values(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([])])
    client._fetch_text = AsyncMock(side_effect=['"INNERTUBE_API_KEY":"k"', LIVE_CHAT_HTML])

    await client.set_targets([VIDEO])
    await wait_until(lambda: sleep.delays)

    assert "/watch?v=" in client._fetch_text.await_args_list[1].args[0]
    assert client.states[VIDEO].api_key == "k"
    assert client.states[VIDEO].continuation == "next-cont"
    await client.close()


@pytest.mark.asyncio
async def test_removing_target_stops_polling(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([])])
    await client.set_targets([VIDEO])
    await wait_until(lambda: sleep.delays)
    task = client.states[VIDEO].task

    await client.set_targets([])

    assert task.cancelled()
    assert client.states == {}


@pytest.mark.asyncio
async def test_send_requires_loaded_chat(config, diagnostics):
    client = YouTubeChatClient(config, diagnostics=diagnostics)

    result = await client.send_message(VIDEO, "hi")

    assert not result.success
    assert result.error == "Chat not loaded for this stream"


@pytest.mark.asyncio
async def test_send_posts_continuation_as_params(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([], continuation="ab-c_d")])
    await client.set_targets([VIDEO])
    await wait_until(lambda: sleep.delays)
    client._post_json = AsyncMock(return_value={"actions": []})

    result = await client.send_message(VIDEO, " hello ")

    assert result.success
    url, body, _ = client._post_json.await_args.args
    assert url.endswith("/youtubei/v1/live_chat/send_message?prettyPrint=false")
    assert body["params"] == "ab+c/d=="
    assert body["richMessage"]["textSegments"][0]["text"] == "hello"
    await client.close()


@pytest.mark.asyncio
async def test_send_reports_api_error(config, diagnostics):
    client, sleep = await polling_client(config, diagnostics, [poll_response([])])
    await client.set_targets([VIDEO])
    await wait_until(lambda: sleep.delays)
    client._post_json = AsyncMock(return_value={"error": {"message": "Slow down"}})

    result = await client.send_message(VIDEO, "hello")

    assert result.error == "Slow down"
    await client.close()


def test_to_dict_round_trips_through_json():
    event = yt.extract_messages(VIDEO, [text_action("m1", "x")])[0]

    assert json.loads(json.dumps(event.to_dict()))["kind"] == "message"


@pytest.mark.asyncio
async def test_string_author_name_does_not_stop_polling(config, diagnostics):
    odd = text_action("m1", "one")
    odd["addChatItemAction"]["item"]["liveChatTextMessageRenderer"]["authorName"] = "plain string"
    responses = [poll_response([odd], timeout_ms=1000), poll_response([text_action("m2", "two")], timeout_ms=1000)]
    client, sleep = await polling_client(config, diagnostics, responses, limit=2)

    await client.set_targets([VIDEO])
    first = await next_event(client.events, MessageEvent)
    second = await next_event(client.events, MessageEvent)

    assert (first.author, second.text) == ("unknown", "two")
    assert client.states[VIDEO].polls == 2
    assert not client.states[VIDEO].task.done()
    await client.close()


@pytest.mark.asyncio
async def test_undecodable_poll_response_is_retried(config, diagnostics):
    responses = [["unexpected"], poll_response([text_action("m1", "after")])]
    client, sleep = await polling_client(config, diagnostics, responses, limit=2)

    await client.set_targets([VIDEO])
    event = await next_event(client.events, MessageEvent)
    await wait_until(lambda: len(sleep.delays) == 2)

    assert event.text == "after"
    assert sleep.delays == [2.0, 4.0]
    first, second = client._post_json.await_args_list
    assert first.args[1]["continuation"] == second.args[1]["continuation"] == "init-cont"
    await client.close()


@pytest.mark.asyncio
async def test_failing_action_is_recorded_and_skipped(config, diagnostics, monkeypatch):
    normalize = yt.normalize_action

    def flaky(video_id, action):
        if "boom" in action:
            raise TypeError("bad shape")
        return normalize(video_id, action)

    monkeypatch.setattr(yt, "normalize_action", flaky)
    responses = [poll_response([{"boom": 1}, text_action("m2", "two")])]
    client, sleep = await polling_client(config, diagnostics, responses)

    await client.set_targets([VIDEO])
    event = await next_event(client.events, MessageEvent)
    await wait_until(lambda: sleep.delays)

    assert event.text == "two"
    assert "action_parse_error" in diagnostics.kinds()
    await client.close()


@pytest.mark.asyncio
async def test_room_ends_when_continuation_stops(config, diagnostics):
    responses = [poll_response([], continuation=None)] * 3
    client, sleep = await polling_client(config, diagnostics, responses, limit=None)

    await client.set_targets([VIDEO])
    notice = await next_event(client.events, NoticeEvent)

    assert notice.notice == NoticeType.ERROR
    assert "ended" in notice.text
    assert client._post_json.await_count == 3
    assert len(sleep.delays) == 2
    assert VIDEO not in client.targets
    assert VIDEO not in client.states
    await client.close()
