from __future__ import annotations

import asyncio
import enum
import logging
import signal
from collections.abc import Callable

from dnsprobe.domain import Domain
from dnsprobe.metrics import Metrics
from dnsprobe.query.base import QueryRunner
from dnsprobe.store.base import PersistenceStore, StoreError

logger = logging.getLogger("dnsprobe")

DEFAULT_PROBE_INTERVAL_S = 1.0
DEFAULT_FLUSH_EVERY = 4

TERMINATION_SIGNALS = ("SIGINT", "SIGHUP", "SIGTERM")


class State(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def register_termination_handlers(loop, stop_fn: Callable[[], None]) -> list[int]:
    """Route termination signals to stop_fn as loop callbacks. Returns what was installed."""
    installed = []
    for name in TERMINATION_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop_fn)
        except NotImplementedError:
            continue
        installed.append(sig)
    return installed


class Orchestrator:
    """
    Drives the probe loop for every stored domain.

    A single coroutine owns the domains: ticks are processed one at a time and
    a flush only starts once every probe of the pass has returned. Signals only
    set the stop event; the final flush happens in the loop itself.
    """

    def __init__(
        self,
        runner_factory: Callable[[Domain], QueryRunner],
        metrics: Metrics | None = None,
        max_concurrent_probes: int = 1,
    ) -> None:
        self.runner_factory = runner_factory
        self.metrics = metrics
        self.max_concurrent_probes = max(1, max_concurrent_probes)
        self.state = State.UNINITIALIZED
        self.domains: list[Domain] = []
        # Aligned with self.domains; names are not unique in the store
        self.runners: list[QueryRunner] = []
        self.ticks = 0
        self._store: PersistenceStore | None = None
        self._stop_event: asyncio.Event | None = None
        self._stop_requested = False
        self._next_deadline = 0.0

    def stop(self) -> None:
        if not self._stop_requested:
            logger.info("Application interrupted, stopping after the current probe pass")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def start(
        self,
        store: PersistenceStore,
        probe_interval_s: float = DEFAULT_PROBE_INTERVAL_S,
        flush_every_n_ticks: int = DEFAULT_FLUSH_EVERY,
        handle_signals: bool = True,
    ) -> None:
        if probe_interval_s <= 0:
            raise ValueError("probe_interval_s must be > 0")
        if flush_every_n_ticks < 1:
            raise ValueError("flush_every_n_ticks must be >= 1")

        self._store = store
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        try:
            self.domains = store.load_domains()
        except StoreError as exc:
            logger.error("Cannot load domains: %s", exc)
            self.domains = []
        self.state = State.LOADED
        self._update_gauges()
        if not self.domains:
            logger.info("No domain to probe.")
            return

        for domain in self.domains:
            self.runners.append(self.runner_factory(domain))

        loop = asyncio.get_running_loop()
        installed = register_termination_handlers(loop, self.stop) if handle_signals else []
        self.state = State.RUNNING
        logger.info(
            "Probing %d domains every %.3fs, flushing every %d ticks",
            len(self.domains),
            probe_interval_s,
            flush_every_n_ticks,
        )
        try:
            await self._run(probe_interval_s, flush_every_n_ticks)
        finally:
            self.state = State.STOPPING
            self.flush()
            for runner in self.runners:
                runner.close()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.state = State.STOPPED
            logger.info("Stopped")

    async def _run(self, interval_s: float, flush_every: int) -> None:
        loop = asyncio.get_running_loop()
        self._next_deadline = loop.time()
        await self.probe_all()
        while not self._stop_requested:
            if await self._wait_for_tick(interval_s):
                break
            self.ticks += 1
            if self.metrics:
                self.metrics.inc("ticks_total")
            logger.debug("Tick fired")
            await self.probe_all()
            if self.ticks >= flush_every:
                self.flush()
                self.ticks = 0

    async def _wait_for_tick(self, interval_s: float) -> bool:
        """Sleep until the next deadline. Returns True when a stop was requested."""
        loop = asyncio.get_running_loop()
        self._next_deadline += interval_s
        now = loop.time()
        if now > self._next_deadline:
            # Overran: keep one pending tick, drop the rest
            missed = int((now - self._next_deadline) // interval_s)
            if missed:
                logger.warning("Probe pass overran the interval, dropping %d ticks", missed)
                if self.metrics:
                    self.metrics.inc("ticks_dropped_total", missed)
                self._next_deadline += missed * interval_s
        try:
            await asyncio.wait_for(
                self._stop_event.wait(), timeout=max(0.0, self._next_deadline - now)
            )
        except asyncio.TimeoutError:
            return self._stop_requested
        return True

    async def probe_all(self) -> None:
        logger.debug("Probing all...")
        semaphore = asyncio.Semaphore(self.max_concurrent_probes)

        async def probe_one(runner: QueryRunner) -> None:
            async with semaphore:
                try:
                    await runner.probe()
                except Exception:
                    logger.exception("PROBE ERROR %s", runner.domain.name)

        await asyncio.gather(*(probe_one(r) for r in self.runners))
        self._update_gauges()

    def flush(self) -> None:
        if self._store is None or not self.domains:
            return
        pending = sum(d.pending_events for d in self.domains)
        try:
            saved = self._store.save_domains(self.domains)
        except StoreError as exc:
            dropped = pending - sum(d.pending_events for d in self.domains)
            logger.error("FLUSH FAIL %s (%d events dropped)", exc, dropped)
            if self.metrics:
                self.metrics.inc("flush_failures_total")
                self.metrics.inc("events_dropped_total", dropped)
            self._update_gauges()
            return
        logger.debug("FLUSH OK %d events", saved)
        if self.metrics:
            self.metrics.inc("flushes_total")
            self.metrics.inc("events_saved_total", saved)
        self._update_gauges()

    def _update_gauges(self) -> None:
        if self.metrics is None:
            return
        self.metrics.set_gauge("domains", len(self.domains))
        self.metrics.set_gauge("pending_events", sum(d.pending_events for d in self.domains))
