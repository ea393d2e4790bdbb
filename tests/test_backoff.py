"""Tests for connector backoff logic."""

from livestream_events.connections.base import (
    INITIAL_RECONNECT_DELAY,
    MAX_RECONNECT_DELAY,
    RECONNECT_BACKOFF_FACTOR,
    RECONNECT_JITTER,
    BackoffPolicy,
    compute_backoff,
)


def test_first_attempt_is_near_initial():
    policy = BackoffPolicy()
    delay = compute_backoff(policy, 1)
    max_jitter = INITIAL_RECONNECT_DELAY * RECONNECT_JITTER
    assert INITIAL_RECONNECT_DELAY - max_jitter <= delay <= INITIAL_RECONNECT_DELAY + max_jitter


def test_backoff_increases_exponentially():
    policy = BackoffPolicy(jitter=0.0)
    first = compute_backoff(policy, 1)
    assert first == INITIAL_RECONNECT_DELAY
    assert compute_backoff(policy, 2) == first * RECONNECT_BACKOFF_FACTOR
    assert compute_backoff(policy, 3) == first * RECONNECT_BACKOFF_FACTOR**2


def test_backoff_caps_at_max():
    policy = BackoffPolicy()
    for attempt in (10, 50, 1000):
        delay = compute_backoff(policy, attempt, lambda: 0.5)
        assert delay == MAX_RECONNECT_DELAY


def test_backoff_jitter_bounds():
    policy = BackoffPolicy(initial_delay=10.0, jitter=0.1)
    assert compute_backoff(policy, 1, lambda: 0.0) == 9.0
    assert compute_backoff(policy, 1, lambda: 1.0) == 11.0


def test_backoff_jitter_varies():
    policy = BackoffPolicy()
    delays = {compute_backoff(policy, 3) for _ in range(50)}
    assert len(delays) > 1


def test_attempt_zero_treated_as_first():
    policy = BackoffPolicy(initial_delay=2.0, jitter=0.0)
    assert compute_backoff(policy, 0) == 2.0


def test_custom_policy():
    policy = BackoffPolicy(initial_delay=5.0, max_delay=30.0, factor=3.0, jitter=0.0)
    assert [compute_backoff(policy, n) for n in range(1, 5)] == [5.0, 15.0, 30.0, 30.0]
