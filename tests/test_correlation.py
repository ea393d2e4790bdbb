"""Tests for deduplication, gift correlation and stacking gifts."""

from livestream_events.core.correlation import (
    LATE_TERMINAL_GRACE,
    Correlator,
    GiftCorrelationTracker,
    RecentIds,
    StackingGiftTracker,
)
from livestream_events.core.models import (
    ANONYMOUS_GIFTER,
    Actor,
    EventType,
    Platform,
)

GIFTER = Actor(id="g-1", username="gifter", display_name="Gifter")

# --- RecentIds ---


def test_recent_ids_rejects_duplicates(clock):
    recent = RecentIds(capacity=10, retention=0, clock=clock)
    assert recent.add("a") is True
    assert recent.add("a") is False
    assert "a" in recent
    assert len(recent) == 1


def test_recent_ids_evicts_oldest_past_capacity(clock):
    recent = RecentIds(capacity=3, retention=0, clock=clock)
    for item_id in ("a", "b", "c", "d"):
        recent.add(item_id)
    assert "a" not in recent
    assert all(i in recent for i in ("b", "c", "d"))


def test_recent_ids_retention_keeps_young_ids(clock):
    recent = RecentIds(capacity=2, retention=60, clock=clock)
    for item_id in ("a", "b", "c"):
        recent.add(item_id)
    assert "a" in recent  # younger than retention

    clock.advance(61)
    recent.add("d")
    assert "a" not in recent
    assert "b" not in recent
    assert len(recent) == 2


def test_recent_ids_hard_limit(clock):
    recent = RecentIds(capacity=2, retention=3600, clock=clock)
    for n in range(150):
        recent.add(str(n))
    assert len(recent) == 100  # capacity * 50
    assert "0" not in recent


# --- GiftCorrelationTracker ---


def test_gift_tracker_matches_until_exhausted(clock):
    tracker = GiftCorrelationTracker(ttl=300, clock=clock)
    tracker.open(GIFTER, 2, gifter_id="g-1")
    assert tracker.match("g-1") is GIFTER
    assert tracker.get("g-1").remaining == 1
    assert tracker.match("g-1") is GIFTER
    assert tracker.get("g-1") is None
    assert tracker.match("g-1") is None


def test_gift_tracker_reopen_adds_and_restarts_ttl(clock):
    tracker = GiftCorrelationTracker(ttl=300, clock=clock)
    tracker.open(GIFTER, 2, gifter_id="g-1")
    clock.advance(200)
    tracker.open(GIFTER, 3, gifter_id="g-1")
    clock.advance(200)
    entry = tracker.get("g-1")
    assert entry.remaining == 5
    assert tracker.prune() == 0


def test_gift_tracker_expires_at_ttl(clock):
    tracker = GiftCorrelationTracker(ttl=300, clock=clock)
    tracker.open(GIFTER, 5, gifter_id="g-1")
    clock.advance(300)
    assert tracker.prune() == 1
    assert len(tracker) == 0


def test_gift_tracker_keys_on_actor_without_id(clock):
    tracker = GiftCorrelationTracker(ttl=300, clock=clock)
    entry = tracker.open(Actor(username="NoId", display_name="NoId"), 1)
    assert entry.gifter_id == "noid"


# --- Correlator: dedup ---


def test_duplicate_ids_are_dropped(make_event):
    correlator = Correlator()
    assert correlator.ingest(make_event("m-1")) is not None
    assert correlator.ingest(make_event("m-1")) is None
    assert correlator.ingest(make_event("m-2")) is not None


def test_dedup_is_per_platform(make_event):
    correlator = Correlator()
    assert correlator.ingest(make_event("same", platform=Platform.TWITCH)) is not None
    assert correlator.ingest(make_event("same", platform=Platform.YOUTUBE)) is not None


# --- Correlator: gift purchase / received ---


def _purchase(make_event, count, event_id="p-1"):
    return make_event(
        event_id,
        EventType.GIFT_MEMBERSHIP_PURCHASE,
        platform=Platform.YOUTUBE,
        actor=GIFTER,
        amount=float(count),
        extra={"gifter_id": "g-1"},
    )


def _received(make_event, event_id, gifter_id="g-1"):
    recipient = Actor(id=f"r-{event_id}", username=event_id, display_name=event_id)
    return make_event(
        event_id,
        EventType.GIFT_MEMBERSHIP_RECEIVED,
        platform=Platform.YOUTUBE,
        actor=recipient,
        amount=1.0,
        extra={"gifter_id": gifter_id},
    )


def test_five_gifts_all_attributed_then_entry_removed(make_event, clock):
    correlator = Correlator(clock=clock)
    purchase = correlator.ingest(_purchase(make_event, 5))
    assert purchase.type == EventType.GIFT_MEMBERSHIP_PURCHASE
    assert correlator.gift_correlation(Platform.YOUTUBE, "g-1").remaining == 5

    for n in range(5):
        event = correlator.ingest(_received(make_event, f"r{n}"))
        assert event.counterpart is GIFTER
        assert event.extra["correlated"] is True

    assert correlator.gift_correlation(Platform.YOUTUBE, "g-1") is None


def test_gift_received_after_ttl_is_anonymous(make_event, clock):
    correlator = Correlator(gift_ttl=300, clock=clock)
    correlator.ingest(_purchase(make_event, 5))
    clock.advance(301)
    event = correlator.ingest(_received(make_event, "late"))
    assert event.counterpart.display_name == ANONYMOUS_GIFTER
    assert event.extra["correlated"] is False


def test_gift_received_without_purchase_is_anonymous(make_event):
    correlator = Correlator()
    event = correlator.ingest(_received(make_event, "orphan", gifter_id=""))
    assert event.counterpart.display_name == ANONYMOUS_GIFTER


def test_twitch_subgift_keeps_its_own_gifter(make_event):
    correlator = Correlator()
    mystery = make_event(
        "mystery",
        EventType.GIFT_PURCHASE,
        actor=GIFTER,
        amount=2.0,
        extra={"gifter_id": "g-1"},
    )
    correlator.ingest(mystery)
    tag_sender = Actor(id="g-1", username="gifter", display_name="GifterFromTags")
    gift = make_event(
        "sub-1",
        EventType.GIFT_SUBSCRIPTION,
        actor=Actor(id="r", username="r", display_name="r"),
        counterpart=tag_sender,
        extra={"gifter_id": "g-1"},
    )
    event = correlator.ingest(gift)
    assert event.counterpart is tag_sender
    assert event.extra["correlated"] is True
    assert correlator.gift_correlation(Platform.TWITCH, "g-1").remaining == 1


def test_sweep_prunes_expired_correlations(make_event, clock):
    correlator = Correlator(gift_ttl=300, clock=clock)
    correlator.ingest(_purchase(make_event, 3))
    clock.advance(300)
    correlator.sweep()
    assert correlator.gift_correlation(Platform.YOUTUBE, "g-1") is None


# --- Correlator: stacking gifts ---


def _combo(make_event, event_id, repeat_count, repeat_end=False):
    return make_event(
        event_id,
        EventType.GIFT,
        platform=Platform.TIKTOK,
        amount=float(repeat_count),
        currency="diamonds",
        extra={
            "gift_name": "Rose",
            "diamond_count": 1,
            "repeat_count": repeat_count,
            "stackable": True,
            "repeat_end": repeat_end,
        },
    )


def test_stacking_gift_updates_then_final(make_event, clock):
    correlator = Correlator(clock=clock)
    updates = [correlator.ingest(_combo(make_event, f"f{n}", c)) for n, c in enumerate([1, 3, 7])]

    assert [u.id for u in updates] == ["f0", "f0", "f0"]
    assert [u.final for u in updates] == [False, False, False]
    assert [u.extra["repeat_count"] for u in updates] == [1, 3, 7]
    assert correlator.stacking_in_progress() == 1

    final = correlator.ingest(_combo(make_event, "f3", 10, repeat_end=True))
    assert final.id == "f0"
    assert final.final is True
    assert final.extra["repeat_count"] == 10
    assert final.amount == 10.0
    assert correlator.stacking_in_progress() == 0


def test_stacking_gift_finalized_after_inactivity(make_event, clock):
    correlator = Correlator(stacking_timeout=5.0, clock=clock)
    correlator.ingest(_combo(make_event, "f0", 1))
    correlator.ingest(_combo(make_event, "f1", 4))

    clock.advance(4.9)
    assert correlator.sweep() == []

    clock.advance(0.2)
    finalized = correlator.sweep()
    assert len(finalized) == 1
    assert finalized[0].id == "f0"
    assert finalized[0].final is True
    assert finalized[0].extra["repeat_count"] == 4
    assert correlator.stacking_in_progress() == 0


def test_late_terminal_frame_after_inactivity_is_dropped(make_event, clock):
    correlator = Correlator(stacking_timeout=5.0, clock=clock)
    correlator.ingest(_combo(make_event, "f0", 1))
    correlator.ingest(_combo(make_event, "f1", 3))

    clock.advance(6.0)
    finalized = correlator.sweep()
    assert [(e.id, e.extra["repeat_count"]) for e in finalized] == [("f0", 3)]

    assert correlator.ingest(_combo(make_event, "f2", 10, repeat_end=True)) is None


def test_terminal_frame_after_grace_is_its_own_streak(make_event, clock):
    correlator = Correlator(stacking_timeout=5.0, clock=clock)
    correlator.ingest(_combo(make_event, "f0", 1))
    clock.advance(6.0)
    correlator.sweep()

    clock.advance(LATE_TERMINAL_GRACE)
    correlator.sweep()
    event = correlator.ingest(_combo(make_event, "f9", 2, repeat_end=True))
    assert event.id == "f9"
    assert event.final is True


def test_new_streak_after_timeout_finalizes_normally(make_event, clock):
    correlator = Correlator(stacking_timeout=5.0, clock=clock)
    correlator.ingest(_combo(make_event, "f0", 1))
    clock.advance(6.0)
    correlator.sweep()

    correlator.ingest(_combo(make_event, "n0", 1))
    event = correlator.ingest(_combo(make_event, "n1", 5, repeat_end=True))
    assert event.id == "n0"
    assert event.final is True
    assert event.extra["repeat_count"] == 5


def test_single_shot_stackable_gift_is_final(make_event):
    correlator = Correlator()
    event = correlator.ingest(_combo(make_event, "solo", 1, repeat_end=True))
    assert event.final is True
    assert event.id == "solo"


def test_non_stackable_gift_passes_through(make_event):
    correlator = Correlator()
    gift = _combo(make_event, "g", 1)
    gift.extra["stackable"] = False
    event = correlator.ingest(gift)
    assert event is gift
    assert correlator.stacking_in_progress() == 0


def test_repeated_frame_is_not_reprocessed(make_event):
    correlator = Correlator()
    correlator.ingest(_combo(make_event, "f0", 1))
    assert correlator.ingest(_combo(make_event, "f0", 1)) is None


def test_stacking_tracker_counts_never_decrease(make_event, clock):
    tracker = StackingGiftTracker(timeout=5.0, clock=clock)
    tracker.update(_combo(make_event, "a", 5))
    event = tracker.update(_combo(make_event, "b", 3))
    assert event.extra["repeat_count"] == 5
