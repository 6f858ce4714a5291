"""
models/records.py
Rows written to ``hive_trxid_block_num`` and the per-run summary.
"""

from __future__ import annotations

from dataclasses import dataclass, field

TABLE_NAME = "hive_trxid_block_num"


@dataclass(frozen=True)
class TrxIdRecord:
    """One transaction id found in a block.

    A block without transactions is stored as a single record with
    ``trx_id=None`` so that every block number has at least one row.
    """
    trx_id: str | None
    block_num: int

    def to_row(self) -> dict:
        return {"trx_id": self.trx_id, "block_num": self.block_num}


@dataclass
class CoordinatorResult:
    blocks_fetched: int = 0
    records_written: int = 0
    waves: int = 0
    dropped_blocks: list[int] = field(default_factory=list)   # non-retryable HTTP status


@dataclass
class BackfillReport:
    latest_block_num: int
    missing_count: int
    blocks_fetched: int = 0
    records_written: int = 0
    waves: int = 0
    dropped_blocks: list[int] = field(default_factory=list)
    failed_blocks: list[int] = field(default_factory=list)    # retries exhausted
    dry_run: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed_blocks

    def as_log_fields(self) -> dict:
        return {
            "latest_block_num": self.latest_block_num,
            "missing":          self.missing_count,
            "fetched":          self.blocks_fetched,
            "records_written":  self.records_written,
            "waves":            self.waves,
            "dropped":          len(self.dropped_blocks),
            "failed":           len(self.failed_blocks),
            "dry_run":          self.dry_run,
        }
