"""Single-position unrealized P&L from live state, the ledger entry, and prices."""

from __future__ import annotations

from typing import Optional

from ..datalake.schemas import LivePosition, PositionEntryRecord, PositionPnLCalculation, TokenMeta
from ..monitoring.logger import get_logger
from ..utils.constants import MAX_SAFE_INTEGER, MS_PER_DAY, MS_PER_HOUR, now_ms
from ..utils.validators import finite_or_zero, safe_divide, safe_pow10
from .cl_math import impermanent_loss, is_sqrt_price_in_range

_logger = get_logger(__name__)


def token_amount_to_decimal(raw_amount: int, decimals: int) -> float:
    """Convert a raw base-unit amount to a decimal token amount.

    The integer part is split off with ``divmod`` so huge raw amounts are never
    converted to float wholesale. Raises ``ValueError`` for decimals outside
    ``[0, 18]``.
    """

    scale = safe_pow10(decimals)
    negative = raw_amount < 0
    whole, fraction = divmod(abs(int(raw_amount)), scale)
    if whole > MAX_SAFE_INTEGER:
        _logger.warning("Token amount %s exceeds safe integer range; clamping", raw_amount)
        whole = MAX_SAFE_INTEGER
    value = whole + fraction / scale
    return -value if negative else value


def calculate_position_pnl(
    live: LivePosition,
    entry: PositionEntryRecord,
    token_a: TokenMeta,
    token_b: TokenMeta,
    *,
    claimed_fees_usd: float = 0.0,
    now: Optional[int] = None,
) -> PositionPnLCalculation:
    current_ms = now if now is not None else now_ms()
    price_a = finite_or_zero(token_a.price_usd)
    price_b = finite_or_zero(token_b.price_usd)

    amount_a = token_amount_to_decimal(live.token_a_amount, token_a.decimals)
    amount_b = token_amount_to_decimal(live.token_b_amount, token_b.decimals)
    fee_a = token_amount_to_decimal(live.unclaimed_fee_a, token_a.decimals)
    fee_b = token_amount_to_decimal(live.unclaimed_fee_b, token_b.decimals)

    current_value = finite_or_zero(amount_a * price_a + amount_b * price_b)
    unclaimed_fees_usd = finite_or_zero(fee_a * price_a + fee_b * price_b)

    initial_value = finite_or_zero(entry.initial_value_usd)
    pnl = current_value - initial_value
    pnl_with_fees = pnl + unclaimed_fees_usd
    pnl_percentage = safe_divide(pnl_with_fees * 100, initial_value)

    current_pool_price = safe_divide(price_b, price_a)
    entry_pool_price = finite_or_zero(entry.entry_pool_price)
    price_change = current_pool_price - entry_pool_price
    price_change_percentage = safe_divide(price_change * 100, entry_pool_price)

    initial_a = token_amount_to_decimal(entry.initial_token_a_amount, entry.token_a_decimals)
    initial_b = token_amount_to_decimal(entry.initial_token_b_amount, entry.token_b_decimals)
    il = impermanent_loss(
        initial_a,
        initial_b,
        entry.entry_token_a_price_usd,
        entry.entry_token_b_price_usd,
        price_a,
        price_b,
        current_value,
    )

    age_ms = max(0, current_ms - entry.entry_timestamp)

    return PositionPnLCalculation(
        position_address=live.position_address,
        pool_address=live.pool_address,
        token_a_mint=live.token_a_mint,
        token_b_mint=live.token_b_mint,
        initial_value_usd=initial_value,
        current_value_usd=current_value,
        current_token_a_amount=amount_a,
        current_token_b_amount=amount_b,
        token_a_price_usd=price_a,
        token_b_price_usd=price_b,
        unclaimed_fee_a=fee_a,
        unclaimed_fee_b=fee_b,
        unclaimed_fees_usd=unclaimed_fees_usd,
        claimed_fees_usd=finite_or_zero(claimed_fees_usd),
        unrealized_pnl_usd=pnl,
        unrealized_pnl_with_fees_usd=pnl_with_fees,
        unrealized_pnl_percentage=pnl_percentage,
        entry_pool_price=entry_pool_price,
        current_pool_price=current_pool_price,
        price_change=price_change,
        price_change_percentage=price_change_percentage,
        impermanent_loss_usd=il.impermanent_loss,
        hodl_value_usd=il.hodl_value,
        age_hours=age_ms / MS_PER_HOUR,
        age_days=age_ms / MS_PER_DAY,
        entry_timestamp=entry.entry_timestamp,
        in_range=is_sqrt_price_in_range(
            live.pool.sqrt_price, live.pool.sqrt_min_price, live.pool.sqrt_max_price
        ),
        price_available=price_a > 0 and price_b > 0,
        provenance=entry.provenance,
    )


__all__ = ["calculate_position_pnl", "token_amount_to_decimal"]
