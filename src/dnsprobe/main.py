import argparse
import asyncio
import contextlib
import logging
import sys
from collections.abc import Callable

import aiohttp

from dnsprobe.config import Config, build_config, validate_config
from dnsprobe.domain import Domain
from dnsprobe.metrics import Metrics, format_stats, periodic_stats_reporter
from dnsprobe.orchestrator import Orchestrator
from dnsprobe.query.base import QueryRunner, ResolverConfig, ResolverInitError
from dnsprobe.query.doh import DohConfig, DohQueryRunner
from dnsprobe.query.tcp import TcpQueryRunner
from dnsprobe.query.udp import UdpQueryRunner
from dnsprobe.store.base import PersistenceStore, StoreConnectError, StoreError
from dnsprobe.store.sql import SqlStore


class _ArgumentParser(argparse.ArgumentParser):
    # Usage errors exit with 1, --help keeps 0
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _setup_logging(level: int) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="dnsprobe",
        description="Fills a [dnsprobe] database with DNS probe statistics. Durations are in ms.",
    )

    # Domain management
    parser.add_argument("-a", "--add", action="store_true", help="add the listed domains")
    parser.add_argument("-d", "--delete", action="store_true", help="delete the listed domains")
    parser.add_argument("domains", nargs="*", metavar="domain")

    # Database
    parser.add_argument("-b", "--database", default="dnsprobe")
    parser.add_argument("-u", "--user", default="root")
    parser.add_argument("-p", "--password", default="")
    parser.add_argument("--db-driver", choices=["sqlite", "mysql"], default="sqlite")
    parser.add_argument("--db-host", default="localhost")
    parser.add_argument(
        "--db-url",
        default=None,
        help="SQLAlchemy database URL, overrides the other database options",
    )

    # Scheduling
    parser.add_argument(
        "-t", "--probe-interval", type=int, default=1000, help="Probe interval in ms"
    )
    parser.add_argument(
        "--flush-every", type=int, default=4, help="Ticks between database flushes"
    )
    parser.add_argument("--max-concurrent-probes", type=int, default=1)

    # Resolver
    parser.add_argument("--transport", choices=["udp", "tcp", "doh"], default="udp")
    parser.add_argument(
        "--nameserver",
        action="append",
        default=None,
        help="Resolver address, repeatable (default: /etc/resolv.conf)",
    )
    parser.add_argument("--resolver-port", type=int, default=53)
    parser.add_argument("--timeout", type=float, default=2.0, help="Per attempt (seconds)")
    parser.add_argument("--retries", type=int, default=2, help="Extra attempts after a timeout")
    parser.add_argument("--doh-url", default=None)

    # Logging
    parser.add_argument(
        "-v",
        "--verbosity",
        type=int,
        default=1,
        help="0 = highest verbosity level, 1 = lower (no debug messages) etc.",
    )
    return parser


def _runner_factory(
    cfg: Config,
    metrics: Metrics,
    session: aiohttp.ClientSession | None = None,
) -> Callable[[Domain], QueryRunner]:
    if cfg.transport == "doh":
        doh_cfg = DohConfig(url=cfg.doh_url or "", timeout_s=cfg.timeout_s)
        return lambda domain: DohQueryRunner(domain, doh_cfg, session, metrics=metrics)

    resolver_cfg = ResolverConfig(
        nameservers=cfg.nameservers,
        port=cfg.resolver_port,
        timeout_s=cfg.timeout_s,
        retries=cfg.retries,
    )
    if cfg.transport == "tcp":
        return lambda domain: TcpQueryRunner(domain, resolver_cfg, metrics=metrics)
    return lambda domain: UdpQueryRunner(domain, resolver_cfg, metrics=metrics)


def manage_domains(store: PersistenceStore, cfg: Config, logger: logging.Logger) -> None:
    try:
        if cfg.delete_domains:
            store.delete_domains([Domain(name) for name in cfg.domains])
        elif cfg.add_domains:
            known = {domain.name for domain in store.load_domains()}
            new_domains = []
            for name in cfg.domains:
                if name in known:
                    logger.debug("Domain %s already in database.", name)
                    continue
                known.add(name)
                new_domains.append(Domain(name))
            store.add_domains(new_domains)
    except StoreError as exc:
        logger.error("Domain update failed: %s", exc)


async def _run(cfg: Config, store: PersistenceStore) -> None:
    logger = logging.getLogger("dnsprobe")
    metrics = Metrics()
    session = aiohttp.ClientSession() if cfg.transport == "doh" else None
    orchestrator = Orchestrator(
        _runner_factory(cfg, metrics, session),
        metrics=metrics,
        max_concurrent_probes=cfg.max_concurrent_probes,
    )
    reporter_task = asyncio.create_task(periodic_stats_reporter(metrics, cfg.stats_interval_s))
    try:
        await orchestrator.start(
            store,
            probe_interval_s=cfg.probe_interval_s,
            flush_every_n_ticks=cfg.flush_every,
        )
    finally:
        reporter_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reporter_task
        if session is not None:
            await session.close()
        snapshot = metrics.snapshot()
        if any(snapshot.values()):
            logger.info(format_stats(snapshot))


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    cfg = build_config(args)
    try:
        validate_config(cfg)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc

    _setup_logging(cfg.log_level)
    logger = logging.getLogger("dnsprobe")

    store = SqlStore(cfg.database_url)
    try:
        with store:
            manage_domains(store, cfg, logger)
            asyncio.run(_run(cfg, store))
    except (StoreConnectError, ResolverInitError) as exc:
        logger.critical("%s. Exiting..", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
