"""
errors.py
Exception hierarchy for the trx_id backfill.

Fatal errors (configuration, storage) stop the process; fetch errors are
contained by the batch coordinator and decide whether a block is retried.
"""

from __future__ import annotations


class BackfillError(Exception):
    """Base class for every error raised by the backfill."""


class ConfigurationError(BackfillError):
    """Required configuration is missing or malformed."""


class StorageConnectionError(BackfillError):
    """The backing store cannot be reached."""


class StorageReadError(BackfillError):
    """A query against the store failed after the connection was made."""


class StorageWriteError(BackfillError):
    """A bulk insert failed."""

    def __init__(self, message: str, first_block: int | None = None, rows: int = 0):
        super().__init__(message)
        self.first_block = first_block
        self.rows        = rows


# ---------------------------------------------------------------------------
# Fetch errors
# ---------------------------------------------------------------------------

class FetchError(BackfillError):
    """A single block could not be turned into records."""

    retryable = True

    def __init__(self, block_num: int, message: str):
        super().__init__(f"block {block_num}: {message}")
        self.block_num = block_num


class TransportError(FetchError):
    """Connection failure, timeout or broken HTTP exchange."""


class RpcError(FetchError):
    """The node answered 200 but with a JSON-RPC error or an unreadable body."""


class NonSuccessResponse(FetchError):
    """The node answered with a non-2xx HTTP status."""

    RETRYABLE_STATUSES = frozenset({408, 425, 429})

    def __init__(self, block_num: int, status_code: int):
        super().__init__(block_num, f"HTTP {status_code}")
        self.status_code = status_code
        self.retryable   = status_code >= 500 or status_code in self.RETRYABLE_STATUSES


class RetriesExhaustedError(BackfillError):
    """Some blocks still fail after the last allowed wave."""

    def __init__(self, failed_blocks: list[int], waves: int):
        preview = ", ".join(str(b) for b in failed_blocks[:10])
        more    = "" if len(failed_blocks) <= 10 else f" (+{len(failed_blocks) - 10} more)"
        super().__init__(
            f"{len(failed_blocks)} block(s) still failing after {waves} wave(s): {preview}{more}"
        )
        self.failed_blocks = failed_blocks
        self.waves         = waves
