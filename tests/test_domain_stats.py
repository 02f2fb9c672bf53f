import math
import random
import re

import pytest

from dnsprobe.domain import Domain, Event, EventType


def _reply(duration: float, ts: int = 1000) -> Event:
    return Event(time=ts, target="abcd.example.test", type=EventType.RECV_REPLY, duration=duration)


def _failure(event_type: EventType, ts: int = 1000) -> Event:
    return Event(time=ts, target="abcd.example.test", type=event_type, duration=0.0)


def test_count_tracks_replies_only():
    domain = Domain("example.test")
    for i in range(5):
        assert domain.update(_reply(10.0 + i)) is True
    assert domain.query_count == 5

    for event_type in (EventType.SEND_REQUEST, EventType.TIMEOUT, EventType.ERROR):
        assert domain.update(_failure(event_type)) is False
    assert domain.query_count == 5
    assert domain.pending_events == 8


def test_constant_durations_have_zero_stddev():
    domain = Domain("example.test")
    for d in (10, 10, 10):
        domain.update(_reply(d))
    assert domain.query_time_avg == 10
    assert domain.query_time_stddev == 0


def test_population_stddev():
    domain = Domain("example.test")
    for d in (1, 2, 3):
        domain.update(_reply(d))
    assert domain.query_time_avg == pytest.approx(2.0)
    # Population variance 2/3, not the sample variance 1
    assert domain.query_time_stddev == pytest.approx(math.sqrt(2 / 3))
    assert domain.query_time_stddev == pytest.approx(0.8165, abs=1e-4)


def test_stddev_never_negative_or_nan():
    rng = random.Random(7)
    domain = Domain("example.test")
    for _ in range(2000):
        domain.update(_reply(rng.choice([0.1, 0.1 + 1e-12, 1e6, 3.3, 0.0])))
        assert domain.query_time_stddev >= 0
        assert not math.isnan(domain.query_time_stddev)


def test_repeated_identical_values_round_off_clamped():
    domain = Domain("example.test")
    for _ in range(1000):
        domain.update(_reply(0.1))
    assert domain.query_time_stddev >= 0
    assert not math.isnan(domain.query_time_stddev)
    assert domain.query_time_avg == pytest.approx(0.1)


def test_failures_do_not_move_average():
    domain = Domain("example.test")
    domain.update(_reply(20.0))
    domain.update(_failure(EventType.TIMEOUT))
    domain.update(_failure(EventType.ERROR))
    assert domain.query_time_avg == 20.0
    assert domain.query_count == 1


def test_time_first_is_set_once():
    domain = Domain("example.test")
    domain.update(_failure(EventType.TIMEOUT, ts=50))
    assert domain.time_first == 0

    domain.update(_reply(5, ts=100))
    domain.update(_reply(5, ts=200))
    domain.update(_failure(EventType.ERROR, ts=300))
    domain.update(_reply(5, ts=250))

    assert domain.time_first == 100
    assert domain.time_last == 250


def test_loaded_domain_keeps_persisted_first_time():
    domain = Domain("example.test", rank=3, query_count=2, time_first=10, time_last=20)
    domain.update(_reply(5, ts=30))
    assert domain.time_first == 10
    assert domain.time_last == 30
    assert domain.query_count == 3


def test_continues_from_persisted_aggregates():
    fresh = Domain("example.test")
    for d in (5, 15, 25, 35):
        fresh.update(_reply(d))

    resumed = Domain("example.test")
    for d in (5, 15):
        resumed.update(_reply(d))
    reloaded = Domain(
        "example.test",
        rank=1,
        query_time_avg=resumed.query_time_avg,
        query_time_stddev=resumed.query_time_stddev,
        query_count=resumed.query_count,
    )
    for d in (25, 35):
        reloaded.update(_reply(d))

    assert reloaded.query_time_avg == pytest.approx(fresh.query_time_avg)
    assert reloaded.query_time_stddev == pytest.approx(fresh.query_time_stddev)


def test_drain_is_fifo_and_destructive():
    domain = Domain("example.test")
    events = [_reply(1), _failure(EventType.TIMEOUT), _reply(2)]
    for event in events:
        domain.update(event)

    batch = domain.drain_events()
    assert batch == events
    assert domain.pending_events == 0
    assert domain.drain_events() == []

    domain.update(_reply(3))
    assert batch == events
    assert domain.pending_events == 1


def test_random_target_is_deterministic_per_name():
    a = Domain("example.test")
    b = Domain("example.test")
    assert a.random_target() == b.random_target()
    assert [a.random_target() for _ in range(5)] == [b.random_target() for _ in range(5)]


def test_random_target_depends_on_name_order():
    ab = Domain("ab.test")
    ba = Domain("ba.test")
    assert [ab.random_target() for _ in range(10)] != [ba.random_target() for _ in range(10)]


def test_random_target_shape():
    domain = Domain("example.test")
    pattern = re.compile(r"^[a-z0-9]{4,10}$")
    lengths = set()
    for _ in range(500):
        target = domain.random_target()
        assert pattern.match(target)
        lengths.add(len(target))
    assert lengths == set(range(4, 11))
