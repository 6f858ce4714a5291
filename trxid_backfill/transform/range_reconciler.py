"""
transform/range_reconciler.py
Finds the block numbers in ``[1, latest)`` that have no row in storage.

The range is scanned in fixed-size windows so every storage query stays
bounded. Within a window the expected block numbers are counted together
with the ones found in storage: count 1 means only expected, i.e. missing.
"""

from __future__ import annotations

import numpy as np
import structlog

log = structlog.get_logger(__name__)


class RangeReconciler:
    """
    Parameters
    ----------
    gateway
        Anything exposing ``find_in_window(lo, hi) -> set[int]``.
    window_size : int
        Block numbers per storage query (``SEARCH_STEP``).
    """

    def __init__(self, gateway, window_size: int = 1000):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.gateway     = gateway
        self.window_size = window_size

    def windows(self, latest_known: int):
        """Yield inclusive ``(lo, hi)`` windows covering ``[1, latest_known)``."""
        last  = latest_known - 1
        lo    = 1
        upper = 0
        while lo <= last:
            hi = min(lo + self.window_size - 1, last)
            if hi <= upper:
                return
            yield lo, hi
            upper = hi
            lo    = hi + 1

    @staticmethod
    def missing_in_window(lo: int, hi: int, found) -> np.ndarray:
        """Block numbers of ``[lo, hi]`` absent from ``found``, ascending."""
        candidates = np.arange(lo, hi + 1, dtype=np.int64)
        present    = np.unique(np.fromiter((b for b in found if lo <= b <= hi), dtype=np.int64))
        if present.size == 0:
            return candidates

        values, counts = np.unique(np.concatenate([candidates, present]), return_counts=True)
        return values[counts == 1]

    def find_missing(self, latest_known: int) -> list[int]:
        """Strictly increasing list of block numbers missing below ``latest_known``."""
        missing: list[int] = []
        windows = 0
        for lo, hi in self.windows(latest_known):
            log.info("reconcile.window", lo=lo, hi=hi)
            found = self.gateway.find_in_window(lo, hi)
            gap   = self.missing_in_window(lo, hi, found)
            missing.extend(int(b) for b in gap)
            windows += 1

        log.info("reconcile.done", latest_known=latest_known, windows=windows, missing=len(missing))
        return missing
