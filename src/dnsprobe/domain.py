from __future__ import annotations

import logging
import math
import random
import string
import zlib
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum

logger = logging.getLogger("dnsprobe")

_TARGET_ALPHABET = string.ascii_lowercase + string.digits
_TARGET_MIN_LEN = 4
_TARGET_MAX_LEN = 10


class EventType(IntEnum):
    # Values are persisted in measurement.type
    SEND_REQUEST = 0
    RECV_REPLY = 1
    TIMEOUT = 2
    ERROR = 3


@dataclass(frozen=True)
class Event:
    time: int
    target: str
    type: EventType
    duration: float


@dataclass
class Domain:
    """
    One monitored name with its running statistics.

    Statistics only move on RECV_REPLY events. Every event, successful or not,
    is queued until the next flush drains it with drain_events().
    """

    name: str
    rank: int = 0
    query_time_avg: float = 0.0
    query_time_stddev: float = 0.0
    query_count: int = 0
    time_first: int = 0
    time_last: int = 0
    _events: deque[Event] = field(default_factory=deque, init=False, repr=False, compare=False)
    _rng: random.Random = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Not for security: only needs to differ per probe to defeat resolver caches
        self._rng = random.Random(zlib.crc32(self.name.encode("utf-8")))
        logger.debug(
            "Domain %s constructed with avg=%s stddev=%s count=%s first=%s last=%s",
            self.name,
            self.query_time_avg,
            self.query_time_stddev,
            self.query_count,
            self.time_first,
            self.time_last,
        )

    @property
    def pending_events(self) -> int:
        return len(self._events)

    def update(self, event: Event) -> bool:
        self._events.append(event)
        if event.type != EventType.RECV_REPLY:
            return False

        if not self.time_first:
            self.time_first = event.time
        self.time_last = event.time

        n = self.query_count
        old_avg = self.query_time_avg
        total = old_avg * n + event.duration
        # Second moment rebuilt from the previous mean and stddev
        sqr_total = (old_avg * old_avg + self.query_time_stddev * self.query_time_stddev) * n
        sqr_total += event.duration * event.duration

        n += 1
        self.query_count = n
        self.query_time_avg = total / n
        # Population variance, no Bessel correction. Multiply by n/(n-1) for the sample one.
        variance = sqr_total / n - self.query_time_avg * self.query_time_avg
        self.query_time_stddev = math.sqrt(max(0.0, variance))
        return True

    def random_target(self) -> str:
        length = self._rng.randint(_TARGET_MIN_LEN, _TARGET_MAX_LEN)
        return "".join(self._rng.choice(_TARGET_ALPHABET) for _ in range(length))

    def drain_events(self) -> list[Event]:
        batch = list(self._events)
        self._events.clear()
        return batch
