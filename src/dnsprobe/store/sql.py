from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from dnsprobe.domain import Domain, Event
from dnsprobe.store.base import PersistenceStore, StoreConnectError, StoreError, StoreWriteError

logger = logging.getLogger("dnsprobe")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_Id = BigInteger().with_variant(Integer(), "sqlite")

metadata = MetaData()

domain_table = Table(
    "domain",
    metadata,
    Column("rank", _Id, primary_key=True, autoincrement=True, quote=True),
    Column("name", String(255), nullable=False),
    Column("query_time_avg", Float),
    Column("query_time_stddev", Float),
    Column("query_count", BigInteger),
    Column("time_first", BigInteger),
    Column("time_last", BigInteger),
)

measurement_table = Table(
    "measurement",
    metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("time", BigInteger),
    Column("target", String(255), nullable=False),
    Column("type", Integer),
    Column("duration_ms", Float),
    Column(
        "domain_rank",
        _Id,
        ForeignKey("domain.rank", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    ),
)


def build_database_url(
    driver: str,
    database: str,
    user: str = "",
    password: str = "",
    host: str = "localhost",
) -> str:
    if driver == "sqlite":
        path = database if database.endswith(".db") else f"{database}.db"
        return f"sqlite:///{path}"
    if driver == "mysql":
        auth = user
        if password:
            auth = f"{user}:{password}"
        return f"mysql+pymysql://{auth}@{host}/{database}"
    raise ValueError(f"unsupported database driver: {driver}")


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlStore(PersistenceStore):
    """
    SQLAlchemy Core store. The schema is created on connect when missing.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None

    @property
    def display_url(self) -> str:
        try:
            return make_url(self.url).render_as_string(hide_password=True)
        except SQLAlchemyError:
            return "<invalid url>"

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StoreError("store is not connected")
        return self._engine

    def connect(self) -> None:
        try:
            engine = create_engine(self.url, pool_pre_ping=True, future=True)
            if engine.dialect.name == "sqlite":
                event.listen(engine, "connect", _enable_sqlite_foreign_keys)
            metadata.create_all(engine)
        except (SQLAlchemyError, ImportError) as exc:
            raise StoreConnectError(f"Cannot connect to {self.display_url}: {exc}") from exc
        self._engine = engine
        logger.debug("Connected to %s", self.display_url)

    def disconnect(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        logger.debug("Disconnected from %s", self.display_url)

    def load_domains(self) -> list[Domain]:
        stmt = select(domain_table).order_by(domain_table.c.rank)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load domains: {exc}") from exc
        logger.debug("Loaded %d domains", len(rows))
        return [
            Domain(
                name=row["name"],
                rank=row["rank"],
                query_time_avg=row["query_time_avg"] or 0.0,
                query_time_stddev=row["query_time_stddev"] or 0.0,
                query_count=row["query_count"] or 0,
                time_first=row["time_first"] or 0,
                time_last=row["time_last"] or 0,
            )
            for row in rows
        ]

    def add_domains(self, domains: Sequence[Domain]) -> None:
        if not domains:
            return
        ranks: list[int] = []
        try:
            with self.engine.begin() as conn:
                for domain in domains:
                    result = conn.execute(insert(domain_table).values(**_aggregates(domain)))
                    ranks.append(result.inserted_primary_key[0])
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Failed to insert domains: {exc}") from exc
        for domain, rank in zip(domains, ranks):
            domain.rank = rank
            logger.debug("Inserted domain %s with rank %s", domain.name, rank)

    def delete_domains(self, domains: Sequence[Domain]) -> None:
        if not domains:
            return
        names = [d.name for d in domains]
        stmt = delete(domain_table).where(domain_table.c.name.in_(names))
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Failed to delete domains: {exc}") from exc
        logger.debug("Deleted %d domain rows for %s", result.rowcount, ", ".join(names))

    def save_domains(self, domains: Sequence[Domain]) -> int:
        if not domains:
            return 0
        # Detached batches: the live queues are empty from here on, whatever happens
        batches = [(domain, domain.drain_events()) for domain in domains]
        new_ranks: dict[int, int] = {}
        rows: list[dict[str, Any]] = []
        try:
            with self.engine.begin() as conn:
                for domain, events in batches:
                    rank = self._upsert(conn, domain)
                    if rank is None:
                        logger.warning(
                            "Domain %s is no longer stored, dropping %d events",
                            domain.name,
                            len(events),
                        )
                        continue
                    if rank != domain.rank:
                        new_ranks[id(domain)] = rank
                    rows.extend(_measurement(event, rank) for event in events)
                if rows:
                    conn.execute(insert(measurement_table), rows)
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Failed to save domains: {exc}") from exc
        for domain, _events in batches:
            if id(domain) in new_ranks:
                domain.rank = new_ranks[id(domain)]
        logger.debug("Saved %d domains and %d measurements", len(batches), len(rows))
        return len(rows)

    def _upsert(self, conn, domain: Domain) -> int | None:
        if not domain.rank:
            result = conn.execute(insert(domain_table).values(**_aggregates(domain)))
            return result.inserted_primary_key[0]
        stmt = (
            update(domain_table)
            .where(domain_table.c.rank == domain.rank)
            .values(**_aggregates(domain))
        )
        if conn.execute(stmt).rowcount == 0:
            return None
        return domain.rank


def _aggregates(domain: Domain) -> dict[str, Any]:
    return {
        "name": domain.name,
        "query_time_avg": domain.query_time_avg,
        "query_time_stddev": domain.query_time_stddev,
        "query_count": domain.query_count,
        "time_first": domain.time_first,
        "time_last": domain.time_last,
    }


def _measurement(event: Event, rank: int) -> dict[str, Any]:
    return {
        "time": event.time,
        "target": event.target,
        "type": int(event.type),
        "duration_ms": event.duration,
        "domain_rank": rank,
    }
