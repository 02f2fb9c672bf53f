from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from urllib.parse import urlsplit

import aiohttp

from dnsprobe.domain import Domain, Event, EventType
from dnsprobe.metrics import Metrics
from dnsprobe.query.base import QueryRunner, ResolverInitError

DNS_MESSAGE = "application/dns-message"


@dataclass(frozen=True)
class DohConfig:
    url: str
    timeout_s: float = 2.0


def validate_doh_url(url: str) -> None:
    if not isinstance(url, str) or not url.strip():
        raise ValueError("doh_url must be non-empty")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise ValueError("doh_url must start with http:// or https://")
    if not parts.netloc:
        raise ValueError("doh_url must include a host")


class DohQueryRunner(QueryRunner):
    """
    DNS over HTTPS (RFC 8484, POST). The session is owned by the caller and
    shared by every runner of the process.
    """

    def __init__(
        self,
        domain: Domain,
        config: DohConfig,
        session: aiohttp.ClientSession,
        metrics: Metrics | None = None,
    ) -> None:
        super().__init__(domain, metrics)
        try:
            validate_doh_url(config.url)
        except ValueError as exc:
            raise ResolverInitError(f"Cannot create a DoH resolver: {exc}") from exc
        self.config = config
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_s)

    async def send_query(self) -> tuple[Event, bool]:
        # RFC 8484 asks for id 0 so responses stay cacheable
        target, request, wire = self._new_query(query_id=0)
        if request is None:
            return self._event(target, EventType.ERROR), False
        headers = {"Content-Type": DNS_MESSAGE, "Accept": DNS_MESSAGE}
        start = time.perf_counter()
        try:
            async with self._session.post(
                self.config.url,
                data=wire,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if resp.status != 200:
                    return self._event(target, EventType.ERROR), False
                raw = await resp.read()
        except asyncio.TimeoutError:
            return self._event(target, EventType.TIMEOUT), False
        except aiohttp.ClientError:
            return self._event(target, EventType.ERROR), False
        duration_ms = (time.perf_counter() - start) * 1000.0
        return self._reply_event(request, target, raw, duration_ms)
