import argparse
import logging
from dataclasses import dataclass

from dnslib import DNSLabel

from dnsprobe.query.doh import validate_doh_url
from dnsprobe.store.sql import build_database_url

# -v levels, lowest is the most verbose
VERBOSITY_LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)

MAX_LABEL_LEN = 63
# Leaves room for the random label prepended to every query
MAX_NAME_LEN = 253 - 11


@dataclass(frozen=True)
class Config:
    add_domains: bool = False
    delete_domains: bool = False
    domains: tuple[str, ...] = ()
    database: str = "dnsprobe"
    user: str = "root"
    password: str = ""
    db_driver: str = "sqlite"
    db_host: str = "localhost"
    db_url: str | None = None
    probe_interval_ms: int = 1000
    flush_every: int = 4
    max_concurrent_probes: int = 1
    transport: str = "udp"
    nameservers: tuple[str, ...] = ()
    resolver_port: int = 53
    timeout_s: float = 2.0
    retries: int = 2
    doh_url: str | None = None
    verbosity: int = 1
    stats_interval_s: float = 30.0

    @property
    def probe_interval_s(self) -> float:
        return self.probe_interval_ms / 1000.0

    @property
    def log_level(self) -> int:
        return VERBOSITY_LEVELS[self.verbosity]

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        return build_database_url(
            self.db_driver,
            self.database,
            user=self.user,
            password=self.password,
            host=self.db_host,
        )


def validate_domain_name(name: str) -> None:
    stripped = name.strip().rstrip(".")
    if not stripped:
        raise ValueError("domain names must be non-empty")
    try:
        labels = DNSLabel(stripped).label
    except UnicodeError as exc:
        raise ValueError(f"invalid domain name {name!r}: {exc}") from exc
    if any(not label or len(label) > MAX_LABEL_LEN for label in labels):
        raise ValueError(
            f"invalid domain name {name!r}: label empty or longer than {MAX_LABEL_LEN}"
        )
    if len(b".".join(labels)) > MAX_NAME_LEN:
        raise ValueError(f"invalid domain name {name!r}: longer than {MAX_NAME_LEN}")


def build_config(args: argparse.Namespace) -> Config:
    return Config(
        add_domains=args.add,
        delete_domains=args.delete,
        domains=tuple(args.domains),
        database=args.database,
        user=args.user,
        password=args.password,
        db_driver=args.db_driver,
        db_host=args.db_host,
        db_url=args.db_url,
        probe_interval_ms=args.probe_interval,
        flush_every=args.flush_every,
        max_concurrent_probes=args.max_concurrent_probes,
        transport=args.transport,
        nameservers=tuple(args.nameserver or ()),
        resolver_port=args.resolver_port,
        timeout_s=args.timeout,
        retries=args.retries,
        doh_url=args.doh_url,
        verbosity=args.verbosity,
    )


def validate_config(cfg: Config) -> None:
    if not cfg.db_url and not cfg.database.strip():
        raise ValueError("Database name is required")
    if cfg.db_driver not in ("sqlite", "mysql"):
        raise ValueError("db_driver must be 'sqlite' or 'mysql'")
    if cfg.add_domains and cfg.delete_domains:
        raise ValueError("add and delete cannot be combined")
    if (cfg.add_domains or cfg.delete_domains) and not cfg.domains:
        raise ValueError("add/delete need at least one domain name")
    for name in cfg.domains:
        validate_domain_name(name)

    if cfg.probe_interval_ms <= 0:
        raise ValueError("probe_interval must be > 0")
    if cfg.flush_every < 1:
        raise ValueError("flush_every must be >= 1")
    if cfg.max_concurrent_probes < 1:
        raise ValueError("max_concurrent_probes must be >= 1")
    if cfg.verbosity < 0 or cfg.verbosity >= len(VERBOSITY_LEVELS):
        raise ValueError(f"verbosity must be between 0 and {len(VERBOSITY_LEVELS) - 1}")

    if cfg.transport not in ("udp", "tcp", "doh"):
        raise ValueError("transport must be 'udp', 'tcp', or 'doh'")
    if cfg.timeout_s <= 0:
        raise ValueError("timeout_s must be > 0")
    if cfg.retries < 0:
        raise ValueError("retries must be >= 0")
    if cfg.resolver_port < 1 or cfg.resolver_port > 65535:
        raise ValueError("resolver_port must be between 1 and 65535")
    if any(not ns.strip() for ns in cfg.nameservers):
        raise ValueError("nameserver must be non-empty")
    if cfg.transport == "doh":
        if not cfg.doh_url:
            raise ValueError("doh_url is required when transport=doh")
        validate_doh_url(cfg.doh_url)
