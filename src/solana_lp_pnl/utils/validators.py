"""Input guards and total arithmetic helpers shared by every component.

Everything numeric that crosses a persistence or network boundary goes through
these helpers so malformed data degrades to a safe default rather than a crash
or a ``NaN`` in derived state.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from solders.pubkey import Pubkey

from ..monitoring.logger import get_logger
from .constants import (
    HISTORICAL_ID_PREFIX,
    MAX_DECIMALS,
    MAX_PRICE_USD,
    MIN_DIVISOR,
    MS_PER_DAY,
    now_ms,
)

DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})

_BASE58_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_HISTORICAL_ID_RE = re.compile(rf"^{re.escape(HISTORICAL_ID_PREFIX)}[1-9A-HJ-NP-Za-km-z]+$")
_HISTORICAL_ID_MIN_LEN = 20
_HISTORICAL_ID_MAX_LEN = 80

TIMESTAMP_MAX_PAST_MS = 365 * MS_PER_DAY
TIMESTAMP_MAX_FUTURE_MS = MS_PER_DAY

_logger = get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: Any) -> bool:
    """True for a real number representable as a finite float."""

    if not _is_number(value):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def is_historical_position_id(value: str) -> bool:
    return (
        _HISTORICAL_ID_MIN_LEN <= len(value) <= _HISTORICAL_ID_MAX_LEN
        and _HISTORICAL_ID_RE.match(value) is not None
    )


def is_valid_address(value: Any) -> bool:
    """Return True for a base58 Solana address or a synthetic historical position id."""

    if not isinstance(value, str) or not value:
        return False
    if value in DANGEROUS_KEYS:
        return False
    if is_historical_position_id(value):
        return True
    if not _BASE58_ADDRESS_RE.match(value):
        return False
    try:
        return str(Pubkey.from_string(value)) == value
    except (ValueError, TypeError):
        return False


def validate_timestamp(timestamp: Any, now: Optional[int] = None) -> int:
    """Return ``timestamp`` (epoch ms) when plausible, otherwise the current time."""

    current = now if now is not None else now_ms()
    if (
        is_finite_number(timestamp)
        and timestamp >= 0
        and current - TIMESTAMP_MAX_PAST_MS <= timestamp <= current + TIMESTAMP_MAX_FUTURE_MS
    ):
        return int(timestamp)
    _logger.warning("Timestamp %r out of range; using current time", timestamp)
    return current


def validate_decimals(decimals: Any) -> bool:
    return isinstance(decimals, int) and not isinstance(decimals, bool) and 0 <= decimals <= MAX_DECIMALS


def validate_price(price: Any) -> bool:
    return is_finite_number(price) and 0 <= price < MAX_PRICE_USD


def safe_divide(numerator: float, denominator: float, fallback: float = 0.0) -> float:
    """Divide without ever producing ``NaN`` or ``Infinity``."""

    if not (_is_number(numerator) and _is_number(denominator)):
        return fallback
    try:
        if not math.isfinite(numerator) or not math.isfinite(denominator):
            return fallback
        if abs(denominator) < MIN_DIVISOR:
            return fallback
        result = numerator / denominator
    except OverflowError:
        return fallback
    if not math.isfinite(result):
        return fallback
    return result


def safe_pow10(exponent: int) -> int:
    """Return ``10 ** exponent`` for decimal scaling.

    Raises ``ValueError`` outside ``[0, 18]`` and ``OverflowError`` when the
    result would not be representable as a finite float.
    """

    if not validate_decimals(exponent):
        raise ValueError(f"Exponent out of range [0, {MAX_DECIMALS}]: {exponent!r}")
    result = 10**exponent
    if not math.isfinite(float(result)):
        raise OverflowError(f"10**{exponent} is not finite")
    return result


def finite_or_zero(value: Any) -> float:
    if is_finite_number(value):
        return float(value)
    return 0.0


def contains_dangerous_keys(payload: Any) -> bool:
    """Recursively look for prototype-pollution style keys in decoded JSON."""

    if isinstance(payload, dict):
        for key, value in payload.items():
            if key in DANGEROUS_KEYS or contains_dangerous_keys(value):
                return True
        return False
    if isinstance(payload, list):
        return any(contains_dangerous_keys(item) for item in payload)
    return False


__all__ = [
    "DANGEROUS_KEYS",
    "contains_dangerous_keys",
    "finite_or_zero",
    "is_finite_number",
    "is_historical_position_id",
    "is_valid_address",
    "safe_divide",
    "safe_pow10",
    "validate_decimals",
    "validate_price",
    "validate_timestamp",
]
