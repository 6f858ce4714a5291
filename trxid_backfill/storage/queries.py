"""
storage/queries.py
SQL used by the persistence gateway, built once with the SQLGlot expression
API and rendered for whichever database the engine points at.
"""

from __future__ import annotations

import sqlglot.expressions as exp

from trxid_backfill.models.records import TABLE_NAME

# SQLAlchemy dialect name -> SQLGlot dialect name
SQLALCHEMY_TO_SQLGLOT = {
    "postgresql": "postgres",
    "sqlite":     "sqlite",
    "mysql":      "mysql",
    "mariadb":    "mysql",
    "mssql":      "tsql",
    "oracle":     "oracle",
    "duckdb":     "duckdb",
}


def sqlglot_dialect(sqlalchemy_dialect: str) -> str:
    try:
        return SQLALCHEMY_TO_SQLGLOT[sqlalchemy_dialect]
    except KeyError:
        raise ValueError(f"unsupported database dialect: {sqlalchemy_dialect}") from None


class TrxIdQueryBuilder:
    """
    Queries against ``hive_trxid_block_num``.

    Block bounds are rendered as integer literals; they never come from
    user-supplied strings.
    """

    def __init__(self, dialect: str = "postgres", table: str = TABLE_NAME):
        self.dialect = dialect
        self.table   = table

    def latest_block_query(self) -> str:
        query = (
            exp.select(exp.column("block_num"))
            .from_(self.table)
            .order_by(exp.Ordered(this=exp.column("block_num"), desc=True))
            .limit(1)
        )
        return query.sql(dialect=self.dialect)

    def window_query(self, lo: int, hi: int) -> str:
        """Distinct block numbers present in ``[lo, hi]``."""
        if hi < lo:
            raise ValueError(f"empty window [{lo}, {hi}]")
        query = (
            exp.select(exp.column("block_num"))
            .from_(self.table)
            .where(
                exp.column("block_num").between(
                    exp.Literal.number(int(lo)),
                    exp.Literal.number(int(hi)),
                )
            )
            .group_by(exp.column("block_num"))
            .order_by(exp.column("block_num"))
        )
        return query.sql(dialect=self.dialect)

    def count_query(self) -> str:
        """Row count of the table, backing ``TrxIdGateway.row_count``."""
        query = exp.select(exp.Count(this=exp.Star())).from_(self.table)
        return query.sql(dialect=self.dialect)

