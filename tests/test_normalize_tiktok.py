"""Tests for TikTok relay frame normalization."""

import pytest

from livestream_events.core.errors import MalformedPayloadError
from livestream_events.core.models import EventType, Platform, RawEvent
from livestream_events.normalize.tiktok import TikTokNormalizer

USER = {
    "userId": "7001",
    "uniqueId": "tiktoker",
    "nickname": "TikToker",
    "profilePictureUrl": "https://example.com/tt.png",
}


def _frame(event: str, **data) -> RawEvent:
    return RawEvent(Platform.TIKTOK, "frame", {"event": event, "data": {**USER, **data}})


def test_chat_with_emotes():
    raw = _frame(
        "chat",
        msgId="c-1",
        comment="hi there",
        createTime="1735732800000",
        emotes=[
            {"emoteId": "e1", "emoteImageUrl": "https://example.com/e1.png", "placeInComment": 3}
        ],
    )
    event = TikTokNormalizer().normalize(raw)[0]
    assert event.type == EventType.CHAT
    assert event.id == "c-1"
    assert event.message == "hi there"
    assert event.actor.display_name == "TikToker"
    assert event.actor.id == "7001"
    assert event.emotes[0][:2] == (3, 3)
    assert event.timestamp.year == 2025


def test_stackable_gift():
    raw = _frame(
        "gift",
        msgId="g-1",
        giftId=5655,
        giftName="Rose",
        diamondCount=1,
        repeatCount=3,
        giftType=1,
        repeatEnd=False,
    )
    event = TikTokNormalizer().normalize(raw)[0]
    assert event.type == EventType.GIFT
    assert event.amount == 3.0
    assert event.extra["gift_name"] == "Rose"
    assert event.extra["stackable"] is True
    assert event.extra["repeat_end"] is False
    assert event.extra["repeat_count"] == 3


def test_non_stackable_gift():
    raw = _frame("gift", msgId="g-2", giftName="Lion", diamondCount=29999, giftType=2)
    event = TikTokNormalizer().normalize(raw)[0]
    assert event.extra["stackable"] is False
    assert event.amount == 29999.0


def test_follow_and_social_follow():
    follow = TikTokNormalizer().normalize(_frame("follow"))[0]
    assert follow.type == EventType.FOLLOW
    assert follow.id == "follow:tiktoker"

    social = TikTokNormalizer().normalize(
        _frame("social", msgId="s-1", displayType="pm_main_follow_message_viewer_2")
    )[0]
    assert social.type == EventType.FOLLOW
    assert social.id == "s-1"


def test_share_is_ignored():
    raw = _frame("social", msgId="s-2", displayType="pm_mt_guidance_share")
    assert TikTokNormalizer().normalize(raw) == []


def test_subscribe():
    event = TikTokNormalizer().normalize(_frame("subscribe", msgId="sub-1", subMonth=3))[0]
    assert event.type == EventType.SUBSCRIPTION
    assert event.amount == 3.0


def test_viewer_and_like_metrics():
    viewers = TikTokNormalizer().normalize(_frame("roomUser", viewerCount=1500))[0]
    assert viewers.type == EventType.METRIC
    assert viewers.currency == "viewers"
    assert viewers.amount == 1500.0

    likes = TikTokNormalizer().normalize(_frame("like", likeCount=15, totalLikeCount=9000))[0]
    assert likes.currency == "likes"
    assert likes.amount == 9000.0


def test_missing_msg_id_gets_composite_id():
    first = TikTokNormalizer().normalize(_frame("chat", comment="a", createTime="1"))[0]
    second = TikTokNormalizer().normalize(_frame("chat", comment="a", createTime="1"))[0]
    assert first.id == second.id
    assert "tiktoker" in first.id


def test_frame_without_data_is_malformed():
    raw = RawEvent(Platform.TIKTOK, "frame", {"event": "chat"})
    with pytest.raises(MalformedPayloadError):
        TikTokNormalizer().normalize(raw)


def test_frame_without_user_is_malformed():
    raw = RawEvent(Platform.TIKTOK, "frame", {"event": "chat", "data": {"comment": "x"}})
    with pytest.raises(MalformedPayloadError):
        TikTokNormalizer().normalize(raw)
