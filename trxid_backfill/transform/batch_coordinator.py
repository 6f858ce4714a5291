"""
transform/batch_coordinator.py
Drives the backfill: fetches missing blocks in bounded concurrent chunks,
flushes the collected records after every chunk and re-queues failed blocks
for the next wave.

Wave lifecycle
--------------
1. Input is the missing list (first wave) or the previous wave's retry queue.
2. The input is split into chunks of ``chunk_size``; each chunk's fetches run
   concurrently and are all joined before the next chunk starts.
3. Fetch tasks record their rows (or their block number, on a retryable
   failure) in the wave's accumulator.
4. After each chunk the pending rows are bulk-written and cleared.
5. A non-empty retry queue starts another wave after an exponential backoff,
   until ``max_waves`` is reached.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from trxid_backfill.errors import NonSuccessResponse, RetriesExhaustedError, RpcError, TransportError
from trxid_backfill.models.records import CoordinatorResult, TrxIdRecord

log = structlog.get_logger(__name__)


class _IncompleteWave(Exception):
    def __init__(self, failed_blocks: list[int]):
        super().__init__(f"{len(failed_blocks)} block(s) failed")
        self.failed_blocks = failed_blocks


class WaveAccumulator:
    """Pending rows and retry queue shared by the fetch tasks of one wave."""

    def __init__(self):
        self._lock   = asyncio.Lock()
        self.pending: list[TrxIdRecord] = []
        self.retry:   list[int] = []
        self.dropped: list[int] = []
        self.fetched = 0

    async def add_records(self, records: Sequence[TrxIdRecord]):
        async with self._lock:
            self.pending.extend(records)
            self.fetched += 1

    async def add_retry(self, block_num: int):
        async with self._lock:
            self.retry.append(block_num)

    async def add_dropped(self, block_num: int):
        async with self._lock:
            self.dropped.append(block_num)

    def drain_pending(self) -> list[TrxIdRecord]:
        records, self.pending = self.pending, []
        return records

    def take_retry(self) -> list[int]:
        blocks, self.retry = sorted(self.retry), []
        return blocks


class BatchCoordinator:
    """
    Parameters
    ----------
    fetcher
        Object with ``async fetch(block_num) -> list[TrxIdRecord]``.
    gateway
        Object with ``bulk_insert(records) -> int``.
    chunk_size : int
        Concurrent fetches per chunk (``PROCESS_STEP``).
    max_waves : int
        Waves before giving up; 0 keeps retrying until every block succeeds.
    backoff_min, backoff_max : float
        Bounds in seconds of the exponential pause between waves.
    """

    def __init__(
        self,
        fetcher,
        gateway,
        chunk_size: int = 100,
        max_waves: int = 10,
        backoff_min: float = 1.0,
        backoff_max: float = 60.0,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.fetcher    = fetcher
        self.gateway    = gateway
        self.chunk_size = chunk_size
        self.stop = stop_after_attempt(max_waves) if max_waves > 0 else stop_never
        self.wait = wait_exponential(multiplier=backoff_min, min=backoff_min, max=backoff_max)
        self.result = CoordinatorResult()

    @staticmethod
    def chunks(blocks: Sequence[int], size: int) -> Iterator[Sequence[int]]:
        for start in range(0, len(blocks), size):
            yield blocks[start:start + size]

    # ------------------------------------------------------------------
    # One fetch / one chunk / one wave
    # ------------------------------------------------------------------

    async def _fetch_one(self, block_num: int, acc: WaveAccumulator):
        try:
            records = await self.fetcher.fetch(block_num)
        except (TransportError, RpcError) as exc:
            log.warning("fetch.failed", block=block_num, error=str(exc))
            await acc.add_retry(block_num)
            return
        except NonSuccessResponse as exc:
            if exc.retryable:
                log.warning("fetch.failed", block=block_num, status=exc.status_code)
                await acc.add_retry(block_num)
            else:
                log.warning("fetch.dropped", block=block_num, status=exc.status_code)
                await acc.add_dropped(block_num)
            return
        await acc.add_records(records)

    def flush(self, acc: WaveAccumulator) -> int:
        records = acc.drain_pending()
        if not records:
            return 0
        written = self.gateway.bulk_insert(records)
        log.info("coordinator.flush", from_block=min(r.block_num for r in records), rows=written)
        return written

    async def run_chunk(self, chunk: Sequence[int], acc: WaveAccumulator) -> int:
        """
        Fetch every block of ``chunk`` concurrently, then flush.

        An unexpected error in one fetch is re-raised only after every other
        fetch of the chunk has settled; the chunk is not flushed then.
        """
        outcomes = await asyncio.gather(
            *(self._fetch_one(block_num, acc) for block_num in chunk),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            log.error("coordinator.chunk_failed", blocks=len(chunk), errors=len(errors), error=repr(errors[0]))
            raise errors[0]
        return self.flush(acc)

    async def run_wave(self, blocks: Sequence[int]) -> list[int]:
        """Run one wave over ``blocks`` and return the blocks to retry."""
        acc = WaveAccumulator()
        for chunk in self.chunks(blocks, self.chunk_size):
            self.result.records_written += await self.run_chunk(chunk, acc)

        self.result.blocks_fetched += acc.fetched
        self.result.dropped_blocks.extend(sorted(acc.dropped))
        return acc.take_retry()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self, missing: Sequence[int]) -> CoordinatorResult:
        """
        Backfill every block in ``missing``.

        Raises RetriesExhaustedError when blocks still fail after the last
        wave, and lets StorageWriteError propagate immediately.
        ``self.result`` holds the counters in both cases.
        """
        self.result = CoordinatorResult()
        if not missing:
            log.info("coordinator.nothing_to_do")
            return self.result

        pending = list(missing)
        retrying = AsyncRetrying(
            stop=self.stop,
            wait=self.wait,
            retry=retry_if_exception_type(_IncompleteWave),
            before_sleep=self._log_backoff,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    wave = attempt.retry_state.attempt_number
                    self.result.waves = wave
                    log.info("coordinator.wave_start", wave=wave, blocks=len(pending))
                    failed = await self.run_wave(pending)
                    if failed:
                        log.warning("coordinator.failed_tasks", wave=wave, failed=len(failed))
                        pending = failed
                        raise _IncompleteWave(failed)
        except _IncompleteWave as exc:
            raise RetriesExhaustedError(exc.failed_blocks, waves=self.result.waves) from exc

        log.info(
            "coordinator.done",
            waves=self.result.waves,
            fetched=self.result.blocks_fetched,
            records_written=self.result.records_written,
            dropped=len(self.result.dropped_blocks),
        )
        return self.result

    @staticmethod
    def _log_backoff(retry_state):
        log.info(
            "coordinator.backoff",
            next_wave=retry_state.attempt_number + 1,
            sleep_s=round(retry_state.next_action.sleep, 2),
        )
