import asyncio
import time

from dnsprobe.domain import Domain, Event, EventType
from dnsprobe.metrics import Metrics
from dnsprobe.query.base import QueryRunner, ResolverConfig, resolve_nameservers


class TcpQueryRunner(QueryRunner):
    """DNS over TCP with 2-byte length framing. One connection per query."""

    def __init__(self, domain: Domain, config: ResolverConfig, metrics: Metrics | None = None):
        super().__init__(domain, metrics)
        self.config = config
        self._nameservers = resolve_nameservers(config)
        self._next_ns = 0

    async def send_query(self) -> tuple[Event, bool]:
        target, request, wire = self._new_query()
        if request is None:
            return self._event(target, EventType.ERROR), False
        failure = EventType.TIMEOUT
        for _attempt in range(1 + max(0, self.config.retries)):
            server = self._nameservers[self._next_ns % len(self._nameservers)]
            self._next_ns += 1
            data, failure, duration_ms = await self._exchange(wire, server)
            if data is not None:
                return self._reply_event(request, target, data, duration_ms)
            if failure != EventType.TIMEOUT:
                break
        return self._event(target, failure), False

    async def _exchange(self, wire: bytes, server: str) -> tuple[bytes | None, EventType, float]:
        timeout = self.config.timeout_s
        start = time.perf_counter()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(server, self.config.port), timeout=timeout
            )
        except asyncio.TimeoutError:
            return None, EventType.TIMEOUT, 0.0
        except OSError:
            return None, EventType.ERROR, 0.0

        try:
            writer.write(len(wire).to_bytes(2, "big") + wire)
            await writer.drain()
            length_bytes = await asyncio.wait_for(reader.readexactly(2), timeout=timeout)
            msg_len = int.from_bytes(length_bytes, "big")
            data = await asyncio.wait_for(reader.readexactly(msg_len), timeout=timeout)
            return data, EventType.RECV_REPLY, (time.perf_counter() - start) * 1000.0
        except asyncio.TimeoutError:
            return None, EventType.TIMEOUT, 0.0
        except (OSError, asyncio.IncompleteReadError):
            return None, EventType.ERROR, 0.0
        finally:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=0.2)
            except Exception:
                pass
