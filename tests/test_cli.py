"""
tests/test_cli.py
End-to-end runs of the backfill job and the command's exit codes.
"""

import asyncio

import pytest
from sqlalchemy import create_engine, text

from conftest import records_for
from trxid_backfill import cli
from trxid_backfill.cli import EXIT_FATAL, EXIT_INCOMPLETE, EXIT_OK, main, run_backfill
from trxid_backfill.config import BackfillConfig
from trxid_backfill.errors import TransportError
from trxid_backfill.models.records import TrxIdRecord

CONFIG_KEYS = ("API_URL", "PG_DSN", "PROCESS_STEP", "SEARCH_STEP", "MAX_RETRY_WAVES",
               "LOG_LEVEL", "LOG_FORMAT", "HTTP_TIMEOUT", "INSERT_BATCH_SIZE",
               "RETRY_BACKOFF_MIN", "RETRY_BACKOFF_MAX")


class StubFetcher:
    def __init__(self, answers=None, always_fail=()):
        self.answers     = answers or {}
        self.always_fail = set(always_fail)
        self.calls       = []

    async def fetch(self, block_num):
        self.calls.append(block_num)
        if block_num in self.always_fail:
            raise TransportError(block_num, "node unreachable")
        trx_ids = self.answers.get(block_num, [])
        if not trx_ids:
            return [TrxIdRecord(None, block_num)]
        return [TrxIdRecord(t, block_num) for t in trx_ids]


class RecordingFetcher(StubFetcher):
    """Stands in for HiveBlockFetcher; remembers how it was built."""

    built = []

    def __init__(self, api_url, timeout=30.0, max_connections=100):
        super().__init__()
        self.api_url         = api_url
        self.timeout         = timeout
        self.max_connections = max_connections
        self.closed          = False
        RecordingFetcher.built.append(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def recording_fetcher(monkeypatch):
    RecordingFetcher.built = []
    monkeypatch.setattr(cli, "HiveBlockFetcher", RecordingFetcher)
    return RecordingFetcher


def make_config(**overrides):
    values = dict(
        api_url="https://hive-node.test",
        pg_dsn="sqlite://",
        process_step=2,
        search_step=2,
        max_retry_waves=3,
        retry_backoff_min=0,
        retry_backoff_max=0,
    )
    values.update(overrides)
    return BackfillConfig(**values)


@pytest.fixture
def clean_env(monkeypatch):
    for key in CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ---------------------------------------------------------------------------
# run_backfill
# ---------------------------------------------------------------------------

class TestRunBackfill:
    def test_empty_store_does_nothing(self, gateway):
        fetcher = StubFetcher()

        report = asyncio.run(run_backfill(make_config(), gateway, fetcher=fetcher))

        assert report.latest_block_num == 0
        assert report.missing_count == 0
        assert fetcher.calls == []
        assert gateway.row_count() == 0

    def test_single_gap_filled(self, gateway, engine):
        gateway.bulk_insert(records_for([1, 2, 4, 5]))
        fetcher = StubFetcher(answers={3: ["aa", "bb"]})

        report = asyncio.run(run_backfill(make_config(), gateway, fetcher=fetcher))

        assert fetcher.calls == [3]
        assert report.missing_count == 1
        assert report.records_written == 2
        assert report.complete
        with engine.connect() as connection:
            rows = connection.execute(
                text("SELECT trx_id FROM hive_trxid_block_num WHERE block_num = 3 ORDER BY trx_id")
            ).scalars().all()
        assert rows == ["aa", "bb"]

    def test_second_run_finds_nothing(self, gateway):
        gateway.bulk_insert(records_for([1, 6]))
        asyncio.run(run_backfill(make_config(), gateway, fetcher=StubFetcher()))

        fetcher = StubFetcher()
        report  = asyncio.run(run_backfill(make_config(), gateway, fetcher=fetcher))

        assert report.missing_count == 0
        assert fetcher.calls == []

    def test_dry_run_writes_nothing(self, gateway):
        gateway.bulk_insert(records_for([1, 5]))
        fetcher = StubFetcher()

        report = asyncio.run(run_backfill(make_config(), gateway, fetcher=fetcher, dry_run=True))

        assert report.dry_run
        assert report.missing_count == 3
        assert fetcher.calls == []
        assert gateway.row_count() == 2

    def test_exhausted_retries_reported(self, gateway):
        gateway.bulk_insert(records_for([1, 5]))
        fetcher = StubFetcher(always_fail={3})

        report = asyncio.run(run_backfill(make_config(), gateway, fetcher=fetcher))

        assert not report.complete
        assert report.failed_blocks == [3]
        assert report.waves == 3
        assert gateway.find_in_window(1, 5) == {1, 2, 4, 5}

    def test_builds_fetcher_from_config(self, gateway, recording_fetcher):
        gateway.bulk_insert(records_for([1, 4]))
        config = make_config(http_timeout=7.5, process_step=2)

        report = asyncio.run(run_backfill(config, gateway))

        [fetcher] = recording_fetcher.built
        assert fetcher.api_url == "https://hive-node.test"
        assert fetcher.timeout == 7.5
        assert fetcher.max_connections == 2
        assert fetcher.calls == [2, 3]
        assert fetcher.closed
        assert report.complete


# ---------------------------------------------------------------------------
# main(): exit codes
# ---------------------------------------------------------------------------

class TestMain:
    def test_missing_dsn_exits_non_zero(self, clean_env):
        clean_env.setenv("API_URL", "https://hive-node.test")
        assert main([]) == EXIT_FATAL

    def test_unreachable_storage_exits_non_zero(self, clean_env):
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", "nosuchdb://nowhere/x")
        assert main([]) == EXIT_FATAL

    def test_invalid_flag_value_exits_non_zero(self, clean_env, tmp_path):
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", f"sqlite:///{tmp_path / 'cli.db'}")
        assert main(["--process-step", "0"]) == EXIT_FATAL

    def test_dry_run_on_fresh_database(self, clean_env, tmp_path):
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", f"sqlite:///{tmp_path / 'cli.db'}")
        assert main(["--create-table", "--dry-run"]) == EXIT_OK

    def test_flags_stand_in_for_env(self, clean_env, tmp_path):
        dsn = f"sqlite:///{tmp_path / 'flags.db'}"
        assert main(["--api-url", "https://hive-node.test", "--pg-dsn", dsn,
                     "--create-table", "--dry-run", "--log-format", "json"]) == EXIT_OK

    def test_scheme_less_api_url_exits_non_zero(self, clean_env, tmp_path):
        clean_env.setenv("API_URL", "api.hive.blog")
        clean_env.setenv("PG_DSN", f"sqlite:///{tmp_path / 'cli.db'}")
        assert main([]) == EXIT_FATAL

    def test_missing_table_exits_non_zero(self, clean_env, tmp_path):
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", f"sqlite:///{tmp_path / 'no-table.db'}")
        assert main([]) == EXIT_FATAL

    def test_read_error_during_reconcile_exits_non_zero(self, clean_env, tmp_path, monkeypatch):
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", f"sqlite:///{tmp_path / 'cli.db'}")

        def dropped_connection(self, lo, hi):
            raise cli.StorageReadError("server closed the connection")

        monkeypatch.setattr(cli.TrxIdGateway, "latest_block_num", lambda self: 10)
        monkeypatch.setattr(cli.TrxIdGateway, "find_in_window", dropped_connection)
        assert main(["--create-table"]) == EXIT_FATAL

    def test_write_failure_exits_incomplete(self, clean_env, tmp_path, recording_fetcher):
        db = tmp_path / "strict.db"
        engine = create_engine(f"sqlite:///{db}")
        with engine.begin() as connection:
            connection.execute(text(
                "CREATE TABLE hive_trxid_block_num "
                "(trx_id TEXT, block_num INTEGER NOT NULL CHECK (block_num <> 2))"
            ))
            connection.execute(text(
                "INSERT INTO hive_trxid_block_num VALUES ('a', 1), ('c', 3)"
            ))
        engine.dispose()
        clean_env.setenv("API_URL", "https://hive-node.test")
        clean_env.setenv("PG_DSN", f"sqlite:///{db}")

        assert main([]) == EXIT_INCOMPLETE
        assert recording_fetcher.built[0].calls == [2]
