"""Shared constants for DAMM v2 position accounting."""

from __future__ import annotations

import time


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


SOL_DECIMALS = 9
SOL_MINT = "So11111111111111111111111111111111111111112"

DAMM_V2_PROGRAM_ID = "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG"

# Q64.64 fixed point scale used by sqrt prices and reward accumulators.
Q64 = 1 << 64
TICK_BASE = 1.0001
MAX_DECIMALS = 18
MAX_PRICE_USD = 1e15
MIN_DIVISOR = 1e-10
MAX_SAFE_INTEGER = 2**53 - 1

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000

ENTRIES_STORAGE_KEY = "damm-v2-position-entries"
EXITS_STORAGE_KEY = "damm-v2-position-exits"
SNAPSHOTS_STORAGE_KEY = "damm-v2-position-snapshots"
CLAIMED_FEES_STORAGE_KEY = "damm-v2-claimed-fees"

HISTORICAL_POOL_SENTINEL = "historical-unknown"
HISTORICAL_ID_PREFIX = "hist-"
AUTO_BACKFILL_SIGNATURE = "auto-backfill"

__all__ = [
    "AUTO_BACKFILL_SIGNATURE",
    "CLAIMED_FEES_STORAGE_KEY",
    "DAMM_V2_PROGRAM_ID",
    "ENTRIES_STORAGE_KEY",
    "EXITS_STORAGE_KEY",
    "HISTORICAL_ID_PREFIX",
    "HISTORICAL_POOL_SENTINEL",
    "MAX_DECIMALS",
    "MAX_PRICE_USD",
    "MAX_SAFE_INTEGER",
    "MIN_DIVISOR",
    "MS_PER_DAY",
    "MS_PER_HOUR",
    "MS_PER_MINUTE",
    "Q64",
    "SNAPSHOTS_STORAGE_KEY",
    "SOL_DECIMALS",
    "SOL_MINT",
    "TICK_BASE",
    "now_ms",
]
