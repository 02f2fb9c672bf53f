from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from dnslib import DNSRecord
from dnslib.label import DNSLabelError

from dnsprobe.domain import Domain, Event, EventType
from dnsprobe.metrics import Metrics

logger = logging.getLogger("dnsprobe")

RESOLV_CONF = Path("/etc/resolv.conf")


class ResolverInitError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResolverConfig:
    nameservers: tuple[str, ...] = ()
    port: int = 53
    timeout_s: float = 2.0
    # Extra attempts after a timeout
    retries: int = 2


def system_nameservers(path: Path = RESOLV_CONF) -> list[str]:
    ns = []
    try:
        for line in path.read_text().splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "nameserver":
                ns.append(parts[1])
    except OSError:
        return []
    return ns


def resolve_nameservers(config: ResolverConfig) -> tuple[str, ...]:
    if config.nameservers:
        return config.nameservers
    found = tuple(system_nameservers())
    if not found:
        raise ResolverInitError(f"Cannot create a resolver: no nameserver in {RESOLV_CONF}")
    return found


class QueryRunner(ABC):
    """
    Measures one domain. Subclasses implement send_query() for a resolver backend.

    send_query() never raises for ordinary network failures; it returns a
    TIMEOUT or ERROR event with success=False instead.
    """

    def __init__(self, domain: Domain, metrics: Metrics | None = None) -> None:
        self.domain = domain
        self.metrics = metrics

    @abstractmethod
    async def send_query(self) -> tuple[Event, bool]: ...

    async def probe(self) -> bool:
        event, ok = await self.send_query()
        if self.metrics:
            self.metrics.inc("probes_total")
            if event.type == EventType.RECV_REPLY:
                self.metrics.inc("replies_total")
            elif event.type == EventType.TIMEOUT:
                self.metrics.inc("timeouts_total")
            elif event.type == EventType.ERROR:
                self.metrics.inc("errors_total")
        if not ok:
            logger.warning("PROBE FAIL %s (%s)", event.target, event.type.name)
        self.domain.update(event)
        return ok

    def close(self) -> None:
        return None

    def _new_query(self, query_id: int | None = None) -> tuple[str, DNSRecord | None, bytes]:
        """Build and encode the next question. request is None when the name cannot be encoded."""
        target = f"{self.domain.random_target()}.{self.domain.name}"
        logger.info("Sending query for %s", target)
        try:
            request = DNSRecord.question(target, "A")
            if query_id is not None:
                request.header.id = query_id
            return target, request, request.pack()
        except (UnicodeError, DNSLabelError) as exc:
            logger.warning("Cannot encode query for %s: %s", target, exc)
            return target, None, b""

    @staticmethod
    def _event(target: str, event_type: EventType, duration_ms: float = 0.0) -> Event:
        return Event(time=int(time.time()), target=target, type=event_type, duration=duration_ms)

    def _reply_event(
        self, request: DNSRecord, target: str, wire: bytes, duration_ms: float
    ) -> tuple[Event, bool]:
        try:
            resp = DNSRecord.parse(wire)
        except Exception:
            logger.debug("Malformed reply for %s", target)
            return self._event(target, EventType.ERROR, duration_ms), False
        # Any answer counts, NXDOMAIN included: random labels rarely exist
        if not resp.header.qr or resp.header.id != request.header.id:
            logger.debug("Unexpected reply for %s", target)
            return self._event(target, EventType.ERROR, duration_ms), False
        logger.info(
            "Got answer for %s with rcode %s in %.3f ms",
            target,
            resp.header.rcode,
            duration_ms,
        )
        return self._event(target, EventType.RECV_REPLY, duration_ms), True
