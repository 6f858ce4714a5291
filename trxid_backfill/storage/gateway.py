"""
storage/gateway.py
Persistence gateway for ``hive_trxid_block_num``.

Reads the highest stored block, lists block numbers present in a window,
and bulk-writes TrxIdRecords through pandas + SQLAlchemy.
"""

from __future__ import annotations

from collections.abc import Sequence

import pandas as pd
import sqlalchemy
import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from trxid_backfill.errors import StorageConnectionError, StorageReadError, StorageWriteError
from trxid_backfill.models.records import TABLE_NAME, TrxIdRecord
from trxid_backfill.storage.queries import TrxIdQueryBuilder, sqlglot_dialect

log = structlog.get_logger(__name__)

metadata = sqlalchemy.MetaData()

trxid_table = sqlalchemy.Table(
    TABLE_NAME,
    metadata,
    sqlalchemy.Column("trx_id", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("block_num", sqlalchemy.BigInteger, nullable=False, index=True),
)


def normalize_dsn(dsn: str) -> tuple[str, dict]:
    """
    Turn ``PG_DSN`` into a SQLAlchemy URL plus connect args.

    Accepts SQLAlchemy URLs, ``postgres://`` URLs and libpq keyword DSNs
    (``host=... dbname=...``); the latter are handed to psycopg2 untouched.
    """
    dsn = dsn.strip()
    if "://" not in dsn:
        return "postgresql+psycopg2://", {"dsn": dsn}
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]
    return dsn, {}


def connect(dsn: str, **engine_kwargs) -> Engine:
    """Create an engine and prove it can reach the database."""
    url, connect_args = normalize_dsn(dsn)
    try:
        engine = sqlalchemy.create_engine(
            url,
            connect_args=connect_args,
            pool_pre_ping=True,
            **engine_kwargs,
        )
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except (SQLAlchemyError, ImportError) as exc:
        log.error("storage.connect_failed", error=str(exc))
        raise StorageConnectionError(f"cannot connect to storage: {exc}") from exc
    log.info("storage.connected", dialect=engine.dialect.name)
    return engine


class TrxIdGateway:
    """
    Storage operations the backfill needs.

    Parameters
    ----------
    engine : sqlalchemy.engine.Engine
        Connected engine (see :func:`connect`).
    batch_size : int
        Maximum rows per physical INSERT statement.
    """

    def __init__(self, engine: Engine, batch_size: int = 1000, table: str = TABLE_NAME):
        self.engine     = engine
        self.batch_size = batch_size
        self.table      = table
        self.queries    = TrxIdQueryBuilder(dialect=sqlglot_dialect(engine.dialect.name), table=table)

    def ensure_table(self):
        """Create ``hive_trxid_block_num`` if it does not exist yet."""
        try:
            metadata.create_all(self.engine, tables=[trxid_table], checkfirst=True)
        except SQLAlchemyError as exc:
            log.error("storage.create_table_failed", table=self.table, error=str(exc))
            raise StorageWriteError(f"cannot create {self.table}: {exc}") from exc

    def _read(self, sql: str):
        try:
            with self.engine.connect() as connection:
                return connection.execute(text(sql)).scalars().all()
        except SQLAlchemyError as exc:
            log.error("storage.query_failed", table=self.table, error=str(exc))
            raise StorageReadError(f"query on {self.table} failed: {exc}") from exc

    def latest_block_num(self) -> int:
        """Highest stored block number, 0 for an empty table."""
        rows = self._read(self.queries.latest_block_query())
        return int(rows[0]) if rows and rows[0] is not None else 0

    def find_in_window(self, lo: int, hi: int) -> set[int]:
        return {int(r) for r in self._read(self.queries.window_query(lo, hi))}

    def row_count(self) -> int:
        """Total rows in the table. Diagnostic helper; the backfill itself never counts."""
        rows = self._read(self.queries.count_query())
        return int(rows[0] or 0) if rows else 0

    def bulk_insert(self, records: Sequence[TrxIdRecord]) -> int:
        """
        Write ``records`` in one transaction, ``batch_size`` rows per INSERT.

        Returns the number of rows written. Raises StorageWriteError when the
        database rejects the write; nothing of the batch is kept in that case.
        """
        if not records:
            return 0

        df = pd.DataFrame([r.to_row() for r in records], columns=["trx_id", "block_num"])
        df["block_num"] = df["block_num"].astype("int64")
        first_block = int(df["block_num"].min())

        log.info("storage.insert", from_block=first_block, rows=len(df))
        try:
            with self.engine.begin() as connection:
                df.to_sql(
                    self.table,
                    connection,
                    if_exists="append",
                    index=False,
                    chunksize=self.batch_size,
                    method="multi",
                )
        except (SQLAlchemyError, pd.errors.DatabaseError) as exc:
            # pandas >= 3 re-raises driver errors from to_sql as DatabaseError
            log.error("storage.insert_failed", from_block=first_block, rows=len(df), error=str(exc))
            raise StorageWriteError(
                f"bulk insert of {len(df)} rows failed: {exc}",
                first_block=first_block,
                rows=len(df),
            ) from exc
        return len(df)
