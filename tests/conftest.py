"""
tests/conftest.py
Shared fixtures: a SQLite-backed gateway standing in for Postgres.
"""

import pytest

from trxid_backfill.models.records import TrxIdRecord
from trxid_backfill.storage.gateway import TrxIdGateway, connect


def records_for(block_nums, per_block=1):
    """One record per transaction, ``per_block`` transactions per block."""
    return [
        TrxIdRecord(trx_id=f"trx-{b}-{i}", block_num=b)
        for b in block_nums
        for i in range(per_block)
    ]


@pytest.fixture
def engine(tmp_path):
    engine = connect(f"sqlite:///{tmp_path / 'trxid.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(engine):
    gw = TrxIdGateway(engine, batch_size=3)
    gw.ensure_table()
    return gw


@pytest.fixture
def seeded_gateway(gateway):
    """Store holding rows for blocks {1, 2, 4, 5} (two rows for block 2)."""
    gateway.bulk_insert(records_for([1, 4, 5]) + records_for([2], per_block=2))
    return gateway
