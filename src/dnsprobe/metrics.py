from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from threading import Lock

logger = logging.getLogger("dnsprobe")

# (label in the STATS line, counter or gauge key)
_STATS_FIELDS = (
    ("domains", "domains"),
    ("pending", "pending_events"),
    ("probes", "probes_total"),
    ("replies", "replies_total"),
    ("timeouts", "timeouts_total"),
    ("errors", "errors_total"),
    ("ticks", "ticks_total"),
    ("ticks_dropped", "ticks_dropped_total"),
    ("flushes", "flushes_total"),
    ("flush_fail", "flush_failures_total"),
    ("events_saved", "events_saved_total"),
    ("events_dropped", "events_dropped_total"),
)


class Metrics:
    """
    Probe counters plus a few gauges describing the current state of the
    prober (number of domains, events waiting for the next flush).
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, int] = {}

    def inc(self, key: str, by: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(by)

    def set_gauge(self, key: str, value: int) -> None:
        with self._lock:
            self._gauges[key] = int(value)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            snap = dict(self._counters)
            snap.update(self._gauges)
            return snap


def format_stats(snapshot: Mapping[str, int]) -> str:
    parts = [f"{label}={snapshot.get(key, 0)}" for label, key in _STATS_FIELDS]
    line = f"STATS {' '.join(parts)}"
    replies = snapshot.get("replies_total", 0)
    probes = snapshot.get("probes_total", 0)
    if probes:
        line += f" success_pct={100.0 * replies / probes:.1f}"
    return line


async def periodic_stats_reporter(metrics: Metrics | None, interval_s: float = 30.0) -> None:
    if metrics is None:
        return

    while True:
        await asyncio.sleep(interval_s)
        snapshot = metrics.snapshot()
        if not snapshot.get("probes_total") and not snapshot.get("flushes_total"):
            continue
        logger.info(format_stats(snapshot))
