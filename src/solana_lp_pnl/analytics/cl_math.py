"""Concentrated-liquidity valuation math for DAMM v2 positions.

On-chain quantities (raw token amounts, Q64.64 square-root prices, fee and
reward accumulators) stay as Python ``int`` so nothing is lost to float
rounding. Only human-facing decimals are floats.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from ..monitoring.logger import get_logger
from ..utils.constants import Q64, TICK_BASE
from ..utils.validators import safe_divide, safe_pow10

_logger = get_logger(__name__)


@dataclass(slots=True)
class ImpermanentLoss:
    impermanent_loss: float
    hodl_value: float
    percentage: float


def sqrt_price_to_decimal(sqrt_price: int) -> float:
    """Decode a Q64.64 value without converting the raw integer to float first."""

    if sqrt_price <= 0:
        return 0.0
    quotient, remainder = divmod(sqrt_price, Q64)
    try:
        return float(quotient) + remainder / Q64
    except OverflowError:
        _logger.warning("Sqrt price quotient exceeds float range: %s", sqrt_price)
        return 0.0


def sqrt_price_to_price(sqrt_price: int) -> float:
    decoded = sqrt_price_to_decimal(sqrt_price)
    try:
        price = decoded * decoded
    except OverflowError:
        price = math.inf
    if not math.isfinite(price) or price < 0:
        _logger.warning("Invalid price from sqrt price %s", sqrt_price)
        return 0.0
    return price


def price_to_sqrt_price(price: float) -> int:
    if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        return 0
    root = math.sqrt(price)
    if not math.isfinite(root):
        _logger.warning("Invalid sqrt price from price %s", price)
        return 0
    return int(round(root * Q64))


def tick_to_price(tick: int) -> float:
    try:
        price = TICK_BASE ** (2 * tick)
    except (OverflowError, TypeError):
        _logger.warning("Invalid tick %r", tick)
        return 0.0
    if not math.isfinite(price) or price <= 0:
        _logger.warning("Invalid price from tick %r", tick)
        return 0.0
    return price


def price_to_tick(price: float) -> int:
    if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        _logger.warning("Invalid price for tick conversion: %r", price)
        return 0
    return int(round(math.log(price) / (2 * math.log(TICK_BASE))))


def token_amounts_from_liquidity(
    liquidity: int,
    sqrt_price_current: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int,
    decimals_a: int,
    decimals_b: int,
) -> Tuple[float, float]:
    """Token amounts (decimal) a position of ``liquidity`` holds at the current price."""

    if liquidity <= 0:
        return 0.0, 0.0
    if sqrt_price_lower >= sqrt_price_upper:
        _logger.warning("Invalid price range: lower >= upper")
        return 0.0, 0.0

    sqrt_p = sqrt_price_to_decimal(sqrt_price_current)
    sqrt_pa = sqrt_price_to_decimal(sqrt_price_lower)
    sqrt_pb = sqrt_price_to_decimal(sqrt_price_upper)
    liquidity_f = float(liquidity)

    if sqrt_price_current < sqrt_price_lower:
        amount_a = liquidity_f * (safe_divide(1.0, sqrt_pa) - safe_divide(1.0, sqrt_pb))
        amount_b = 0.0
    elif sqrt_price_current > sqrt_price_upper:
        amount_a = 0.0
        amount_b = liquidity_f * (sqrt_pb - sqrt_pa)
    else:
        amount_a = liquidity_f * (safe_divide(1.0, sqrt_p) - safe_divide(1.0, sqrt_pb))
        amount_b = liquidity_f * (sqrt_p - sqrt_pa)

    if not (math.isfinite(amount_a) and math.isfinite(amount_b)):
        _logger.warning("Non-finite token amount from liquidity %s", liquidity)
        return 0.0, 0.0

    amount_a = max(0.0, amount_a)
    amount_b = max(0.0, amount_b)
    return (
        safe_divide(amount_a, safe_pow10(decimals_a)),
        safe_divide(amount_b, safe_pow10(decimals_b)),
    )


def impermanent_loss(
    initial_a: float,
    initial_b: float,
    initial_price_a: float,
    initial_price_b: float,
    current_price_a: float,
    current_price_b: float,
    current_liquidity_value_usd: float,
) -> ImpermanentLoss:
    """Shortfall of the position versus holding the deposited tokens."""

    hodl_value = initial_a * current_price_a + initial_b * current_price_b
    initial_value = initial_a * initial_price_a + initial_b * initial_price_b
    loss = hodl_value - current_liquidity_value_usd
    if not math.isfinite(loss):
        loss = 0.0
    return ImpermanentLoss(
        impermanent_loss=loss,
        hodl_value=hodl_value if math.isfinite(hodl_value) else 0.0,
        percentage=safe_divide(loss * 100, initial_value),
    )


def liquidity_from_amounts(
    amount_a: int,
    amount_b: int,
    sqrt_price_entry: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int,
) -> int:
    if sqrt_price_lower >= sqrt_price_upper:
        _logger.warning("Invalid price range for liquidity calculation")
        return 0

    sqrt_p0 = sqrt_price_to_decimal(sqrt_price_entry)
    sqrt_pa = sqrt_price_to_decimal(sqrt_price_lower)
    sqrt_pb = sqrt_price_to_decimal(sqrt_price_upper)

    from_a = math.inf
    from_b = math.inf
    if amount_a > 0 and sqrt_p0 < sqrt_pb:
        denominator = safe_divide(1.0, max(sqrt_p0, sqrt_pa)) - safe_divide(1.0, sqrt_pb)
        if denominator > 0:
            from_a = safe_divide(float(amount_a), denominator, math.inf)
    if amount_b > 0 and sqrt_p0 > sqrt_pa:
        denominator = min(sqrt_p0, sqrt_pb) - sqrt_pa
        if denominator > 0:
            from_b = safe_divide(float(amount_b), denominator, math.inf)

    liquidity = min(from_a, from_b)
    if not math.isfinite(liquidity) or liquidity <= 0:
        _logger.warning("Invalid liquidity calculation")
        return 0
    return int(math.floor(liquidity))


def _scaled_growth(liquidity: int, current: int, last: int, label: str) -> int:
    delta = current - last
    if delta < 0:
        _logger.warning("Negative %s growth delta %s", label, delta)
        return 0
    return (liquidity * delta) >> 64


def fees_from_growth(
    liquidity: int,
    fee_growth_global_a: int,
    fee_growth_global_b: int,
    fee_growth_last_a: int,
    fee_growth_last_b: int,
) -> Tuple[int, int]:
    """Raw fees accrued since the position's last checkpoint."""

    return (
        _scaled_growth(liquidity, fee_growth_global_a, fee_growth_last_a, "fee A"),
        _scaled_growth(liquidity, fee_growth_global_b, fee_growth_last_b, "fee B"),
    )


def reward_with_scaling(liquidity: int, reward_per_token_now: int, reward_per_token_last: int) -> int:
    return _scaled_growth(liquidity, reward_per_token_now, reward_per_token_last, "reward")


def is_position_in_range(current_tick: int, tick_lower: int, tick_upper: int) -> bool:
    return tick_lower <= current_tick <= tick_upper


def is_sqrt_price_in_range(sqrt_price: int, sqrt_min_price: int, sqrt_max_price: int) -> bool:
    return sqrt_min_price <= sqrt_price <= sqrt_max_price


__all__ = [
    "ImpermanentLoss",
    "fees_from_growth",
    "impermanent_loss",
    "is_position_in_range",
    "is_sqrt_price_in_range",
    "liquidity_from_amounts",
    "price_to_sqrt_price",
    "price_to_tick",
    "reward_with_scaling",
    "sqrt_price_to_decimal",
    "sqrt_price_to_price",
    "tick_to_price",
    "token_amounts_from_liquidity",
]
