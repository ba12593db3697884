from unittest.mock import AsyncMock

import pytest

from omnichat.clients.twitch import ANONYMOUS_SEND_ERROR, TwitchChatClient
from omnichat.codecs import irc
from omnichat.events import MessageEvent, ModerationAction, MonetaryAction, SendResult
from omnichat.exceptions import FrameDecodeError
from omnichat.session import SessionStore

from .conftest import FakeConnector, next_event, wait_until


def test_privmsg_with_tags():
    message = irc.parse_line("@id=42;display-name=Foo :x!x@x PRIVMSG #bar :hello")
    event = irc.privmsg_to_event(message)

    assert event.event_id == "42"
    assert event.author == "Foo"
    assert event.room_id == "bar"
    assert event.text == "hello"


def test_privmsg_without_tags():
    event = irc.privmsg_to_event(irc.parse_line(":someone!someone@someone PRIVMSG #Bar :hi there"))

    assert event.author == "someone"
    assert event.room_id == "bar"
    assert event.text == "hi there"
    assert event.event_id
    assert event.badges == []
    assert event.emotes == []


def test_action_message():
    event = irc.privmsg_to_event(irc.parse_line(":a!a@a PRIVMSG #bar :\x01ACTION waves\x01"))

    assert event.text == "waves"
    assert event.raw["action"] is True


def test_tags_are_unescaped():
    tags = irc.parse_tags(r"display-name=A\sB;system-msg=x\:y;empty=;flag")

    assert tags == {"display-name": "A B", "system-msg": "x;y", "empty": "", "flag": ""}


def test_badges_and_emotes():
    tags = irc.parse_tags("badges=moderator/1,subscriber/12;emotes=25:0-4,6-10/1902:12-16")
    emotes = irc.extract_emotes(tags)

    assert irc.extract_badges(tags) == ["moderator", "subscriber"]
    assert {"id": "25", "start": 0, "end": 4} in emotes
    assert {"id": "1902", "start": 12, "end": 16} in emotes
    assert len(emotes) == 3


def test_usernotice_subgift():
    line = (
        "@id=n1;msg-id=subgift;display-name=Gifter;msg-param-sub-plan=2000;"
        "msg-param-recipient-display-name=Lucky;tmi-sent-ts=1700000000000 "
        ":tmi.twitch.tv USERNOTICE #bar"
    )
    event = irc.usernotice_to_event(irc.parse_line(line))

    assert event.action == MonetaryAction.GIFT
    assert (event.nick, event.recipient, event.tier) == ("Gifter", "Lucky", 2)


def test_clearchat_timeout_and_ban():
    timeout = irc.clearchat_to_event(irc.parse_line("@ban-duration=600;tmi-sent-ts=1 :tmi.twitch.tv CLEARCHAT #bar :troll"))
    ban = irc.clearchat_to_event(irc.parse_line("@tmi-sent-ts=2 :tmi.twitch.tv CLEARCHAT #bar :troll"))
    clear_all = irc.clearchat_to_event(irc.parse_line(":tmi.twitch.tv CLEARCHAT #bar"))

    assert timeout.action == ModerationAction.MUTE
    assert timeout.duration == 600
    assert ban.action == ModerationAction.BAN
    assert clear_all is None


def test_split_lines_and_pong():
    frame = "PING :tmi.twitch.tv\r\n:a!a@a PRIVMSG #bar :x\r\n"

    assert irc.split_lines(frame) == ["PING :tmi.twitch.tv", ":a!a@a PRIVMSG #bar :x"]
    assert irc.pong_for("PING :tmi.twitch.tv") == "PONG :tmi.twitch.tv"


def test_parse_line_rejects_garbage():
    with pytest.raises(FrameDecodeError):
        irc.parse_line("@only-tags")


def test_anonymous_login():
    nick = irc.anonymous_nick()
    lines = irc.login_lines(nick)

    assert nick.startswith("justinfan")
    assert 10000 <= int(nick[len("justinfan"):]) < 1000000
    assert lines[1] == "PASS SCHMOOPIIE"
    assert lines[2] == f"NICK {nick}"


@pytest.mark.asyncio
async def test_join_is_sent_after_socket_opens(config, diagnostics):
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)

    await client.set_targets(["#Bar", "https://www.twitch.tv/Baz"])
    ws = await connector.next_socket()
    await wait_until(lambda: "JOIN #baz\r\n" in ws.sent)

    assert ws.sent[0].startswith("CAP REQ :twitch.tv/tags")
    assert ws.sent[1] == "PASS SCHMOOPIIE\r\n"
    assert ws.sent.count("JOIN #bar\r\n") == 1
    assert connector.calls[0][1]["Origin"] == config.twitch_origin
    await client.close()


@pytest.mark.asyncio
async def test_ping_is_answered(config, diagnostics):
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)
    await client.set_targets(["bar"])
    ws = await connector.next_socket()

    ws.feed("PING :tmi.twitch.tv\r\n")
    await wait_until(lambda: "PONG :tmi.twitch.tv\r\n" in ws.sent)
    await client.close()


@pytest.mark.asyncio
async def test_multi_line_frame_filters_and_dedups(config, diagnostics):
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)
    await client.set_targets(["bar"])
    ws = await connector.next_socket()

    ws.feed(
        "@id=1 :a!a@a PRIVMSG #other :elsewhere\r\n"
        "@id=2 :a!a@a PRIVMSG #bar :one\r\n"
        "@id=2 :a!a@a PRIVMSG #bar :one\r\n"
        "@id=3 :a!a@a PRIVMSG #bar :two\r\n"
    )
    first = await next_event(client.events, MessageEvent)
    second = await next_event(client.events, MessageEvent)

    assert [first.text, second.text] == ["one", "two"]
    assert [e for e in client.events.drain() if isinstance(e, MessageEvent)] == []
    await client.close()


@pytest.mark.asyncio
async def test_removing_a_target_parts_the_channel(config, diagnostics):
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)
    await client.set_targets(["bar", "baz"])
    ws = await connector.next_socket()
    await wait_until(lambda: "JOIN #baz\r\n" in ws.sent)

    await client.set_targets(["baz"])
    assert "PART #bar\r\n" in ws.sent

    await client.set_targets([])
    assert not client.transport.running
    await client.close()


@pytest.mark.asyncio
async def test_anonymous_send_is_rejected(config, diagnostics):
    client = TwitchChatClient(config, connector=FakeConnector(), diagnostics=diagnostics)

    result = await client.send_message("bar", "hello")

    assert result == SendResult(False, ANONYMOUS_SEND_ERROR)


@pytest.mark.asyncio
async def test_send_with_token_uses_gql(config, diagnostics):
    session = SessionStore({"twitch": {"auth-token": "cookie-token"}})
    client = TwitchChatClient(config, session=session, connector=FakeConnector(), diagnostics=diagnostics)
    client._lookup_channel_id = AsyncMock(return_value="1234")
    client._gql_send = AsyncMock(return_value=SendResult.ok())

    result = await client.send_message("#Bar", "  hello  ")

    assert result.success
    assert client._lookup_channel_id.await_args.args[1] == "bar"
    assert client._gql_send.await_args.args[1:] == ("cookie-token", "1234", "hello")


@pytest.mark.asyncio
async def test_bad_timestamp_does_not_drop_following_lines(config, diagnostics):
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)
    await client.set_targets(["bar"])
    ws = await connector.next_socket()

    ws.feed(
        "@id=1;tmi-sent-ts=99999999999999999999 :a!a@a PRIVMSG #bar :first\r\n"
        "@id=2 :a!a@a PRIVMSG #bar :second\r\n"
    )
    first = await next_event(client.events, MessageEvent)
    second = await next_event(client.events, MessageEvent)

    assert [first.text, second.text] == ["first", "second"]
    assert first.occurred_at is None
    await client.close()


@pytest.mark.asyncio
async def test_failing_line_is_recorded_and_next_line_delivered(config, diagnostics, monkeypatch):
    to_event = irc.privmsg_to_event

    def flaky(message):
        if message.trailing == "boom":
            raise ValueError("bad tags")
        return to_event(message)

    monkeypatch.setattr(irc, "privmsg_to_event", flaky)
    connector = FakeConnector()
    client = TwitchChatClient(config, connector=connector, diagnostics=diagnostics)
    await client.set_targets(["bar"])
    ws = await connector.next_socket()

    ws.feed("@id=1 :a!a@a PRIVMSG #bar :boom\r\n@id=2 :a!a@a PRIVMSG #bar :fine\r\n")
    event = await next_event(client.events, MessageEvent)

    assert event.text == "fine"
    assert "irc_dispatch_error" in diagnostics.kinds()
    await client.close()
