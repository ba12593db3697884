import json

import pytest

from omnichat.codecs import dgg
from omnichat.events import (
    HistoryEvent, MessageEvent, ModerationAction, ModerationEvent, MonetaryEvent,
    NoticeEvent, NoticeType, PollEvent, PollPhase, UserAction, UserEvent,
)
from omnichat.exceptions import FrameDecodeError, UnsupportedFrameError


def test_msg_frame_becomes_message():
    event = dgg.decode_frame('MSG {"id":1,"nick":"a","data":"hello","timestamp":1700000000000,"features":["subscriber"]}')

    assert isinstance(event, MessageEvent)
    assert event.author == "a"
    assert event.text == "hello"
    assert event.room_id == "dgg"
    assert event.author_id == "1"
    assert event.is_subscriber
    assert event.occurred_at.year == 2023


def test_history_keeps_wire_order():
    payload = json.dumps([
        'MSG {"nick":"a","data":"first","timestamp":1}',
        'BROADCAST {"data":"second","timestamp":2}',
    ])

    event = dgg.decode_frame("HISTORY " + payload)

    assert isinstance(event, HistoryEvent)
    assert [type(item) for item in event.items] == [MessageEvent, NoticeEvent]
    assert event.items[0].text == "first"
    assert event.items[0].is_history
    assert event.items[1].notice == NoticeType.BROADCAST
    assert event.items[1].text == "second"


def test_history_skips_bad_items_and_reports_them():
    payload = json.dumps(['MSG {"nick":"a","data":"ok"}', "MSG {broken", "WHATEVER {}"])

    history, errors = dgg.decode_history(payload)

    assert len(history.items) == 1
    assert len(errors) == 2
    assert isinstance(errors[1], UnsupportedFrameError)
    assert errors[1].token == "WHATEVER"


def test_history_item_with_out_of_range_timestamp_is_kept():
    payload = json.dumps([
        'MSG {"nick":"a","data":"one","timestamp":1700000000000}',
        'MSG {"nick":"b","data":"two","timestamp":' + str(10**20) + "}",
        'MSG {"nick":"c","data":"three","timestamp":1700000000001}',
    ])

    history, errors = dgg.decode_history(payload)

    assert [item.text for item in history.items] == ["one", "two", "three"]
    assert history.items[1].occurred_at is None
    assert errors == []


def test_history_isolates_unexpected_item_failures(monkeypatch):
    def explode(token, data, room_id):
        raise KeyError("data")

    monkeypatch.setitem(dgg.FRAME_HANDLERS, "BROADCAST", explode)
    payload = json.dumps([
        'MSG {"nick":"a","data":"before"}',
        'BROADCAST {"data":"boom"}',
        'MSG {"nick":"a","data":"after"}',
    ])

    history, errors = dgg.decode_history(payload)

    assert [item.text for item in history.items] == ["before", "after"]
    assert len(errors) == 1
    assert isinstance(errors[0], FrameDecodeError)
    assert errors[0].token == "BROADCAST"


def test_updateuser_with_extra_spacing():
    event = dgg.decode_frame('UPDATEUSER    {"nick":"bob","features":["vip"]}')

    assert isinstance(event, UserEvent)
    assert event.action == UserAction.UPDATE
    assert event.nick == "bob"
    assert event.features == ["vip"]


def test_token_glued_to_payload():
    token, payload = dgg.split_frame("PAIDEVENTS[]")
    assert (token, payload) == ("PAIDEVENTS", "[]")

    event = dgg.decode_frame("PAIDEVENTS[]")
    assert isinstance(event, NoticeEvent)
    assert event.notice == NoticeType.PAID_EVENTS
    assert event.data == []


def test_me_null():
    event = dgg.decode_frame("ME null")

    assert isinstance(event, NoticeEvent)
    assert event.notice == NoticeType.ME
    assert event.data is None


@pytest.mark.parametrize(
    "frame, action",
    [
        ('MUTE {"nick":"mod","data":"troll","duration":600}', ModerationAction.MUTE),
        ('BAN {"nick":"mod","data":"troll"}', ModerationAction.BAN),
        ('UNBAN {"nick":"mod","data":"troll"}', ModerationAction.UNBAN),
    ],
)
def test_moderation_frames(frame, action):
    event = dgg.decode_frame(frame)

    assert isinstance(event, ModerationEvent)
    assert event.action == action
    assert event.actor == "mod"
    assert event.target == "troll"


def test_subonly_and_death():
    subonly = dgg.decode_frame('SUBONLY {"nick":"mod","data":"on"}')
    death = dgg.decode_frame('DEATH {"nick":"victim","data":"fell over"}')

    assert subonly.enabled is True
    assert subonly.target is None
    assert death.target == "victim"
    assert death.text == "fell over"


def test_poll_and_monetary_frames():
    poll = dgg.decode_frame('POLLSTART {"nick":"a","question":"q?","options":["y","n"],"totals":[0,0],"time":30000}')
    vote = dgg.decode_frame('VOTECAST {"vote":"1","quantity":2}')
    gift = dgg.decode_frame('GIFTSUB {"user":{"nick":"a"},"recipient":{"nick":"b"},"tier":2,"tierLabel":"Tier II"}')

    assert isinstance(poll, PollEvent)
    assert poll.phase == PollPhase.START
    assert poll.options == ["y", "n"]
    assert vote.phase == PollPhase.VOTE
    assert vote.vote == "1"
    assert vote.quantity == 2
    assert isinstance(gift, MonetaryEvent)
    assert (gift.nick, gift.recipient, gift.tier, gift.tier_label) == ("a", "b", 2, "Tier II")


def test_err_with_plain_string():
    event = dgg.decode_frame('ERR "needlogin"')

    assert event.notice == NoticeType.ERROR
    assert event.text == "needlogin"


def test_malformed_payload_raises_decode_error():
    with pytest.raises(FrameDecodeError) as info:
        dgg.decode_frame("MSG {not json")
    assert info.value.token == "MSG"


def test_unknown_token_raises_unsupported():
    with pytest.raises(UnsupportedFrameError) as info:
        dgg.decode_frame('NEWTHING {"a":1}')
    assert info.value.token == "NEWTHING"
    assert not dgg.is_supported("NEWTHING")


def test_event_id_prefers_uuid():
    with_uuid = dgg.decode_frame('MSG {"nick":"a","data":"x","uuid":"abc"}')
    first = dgg.decode_frame('MSG {"nick":"a","data":"x","timestamp":5}')
    second = dgg.decode_frame('MSG {"nick":"a","data":"x","timestamp":5}')

    assert with_uuid.event_id == "MSG:abc"
    assert first.event_id == second.event_id


def test_encode_message():
    assert dgg.encode_message("hi") == 'MSG {"data": "hi"}'
