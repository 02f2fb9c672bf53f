import asyncio
import socket
import time
from concurrent.futures import Executor

from dnsprobe.domain import Domain, Event, EventType
from dnsprobe.metrics import Metrics
from dnsprobe.query.base import QueryRunner, ResolverConfig, resolve_nameservers


class UdpQueryRunner(QueryRunner):
    """
    Classic DNS over UDP. The blocking socket exchange runs in an executor so
    the event loop keeps serving signals while a query is outstanding.
    """

    def __init__(
        self,
        domain: Domain,
        config: ResolverConfig,
        metrics: Metrics | None = None,
        executor: Executor | None = None,
    ):
        super().__init__(domain, metrics)
        self.config = config
        self._nameservers = resolve_nameservers(config)
        self._next_ns = 0
        self._executor = executor

    async def send_query(self) -> tuple[Event, bool]:
        target, request, wire = self._new_query()
        if request is None:
            return self._event(target, EventType.ERROR), False
        loop = asyncio.get_running_loop()
        failure = EventType.TIMEOUT
        for _attempt in range(1 + max(0, self.config.retries)):
            server = self._pick_nameserver()
            data, failure, duration_ms = await loop.run_in_executor(
                self._executor, self._query_blocking, wire, server
            )
            if data is not None:
                return self._reply_event(request, target, data, duration_ms)
            if failure != EventType.TIMEOUT:
                break
        return self._event(target, failure), False

    def _pick_nameserver(self) -> str:
        server = self._nameservers[self._next_ns % len(self._nameservers)]
        self._next_ns += 1
        return server

    def _query_blocking(self, wire: bytes, server: str) -> tuple[bytes | None, EventType, float]:
        family = socket.AF_INET6 if ":" in server else socket.AF_INET
        try:
            s = socket.socket(family, socket.SOCK_DGRAM)
        except OSError:
            return None, EventType.ERROR, 0.0
        s.settimeout(self.config.timeout_s)
        start = time.perf_counter()
        try:
            s.sendto(wire, (server, self.config.port))
            data, _ = s.recvfrom(65535)
            return data, EventType.RECV_REPLY, (time.perf_counter() - start) * 1000.0
        except TimeoutError:
            return None, EventType.TIMEOUT, 0.0
        except OSError:
            return None, EventType.ERROR, 0.0
        finally:
            s.close()
