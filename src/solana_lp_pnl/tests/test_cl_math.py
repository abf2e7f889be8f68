from __future__ import annotations

import math

import pytest

from solana_lp_pnl.analytics.cl_math import (
    fees_from_growth,
    impermanent_loss,
    is_position_in_range,
    is_sqrt_price_in_range,
    liquidity_from_amounts,
    price_to_sqrt_price,
    price_to_tick,
    reward_with_scaling,
    sqrt_price_to_decimal,
    sqrt_price_to_price,
    tick_to_price,
    token_amounts_from_liquidity,
)
from solana_lp_pnl.utils.constants import Q64


@pytest.mark.parametrize("price", [1e-6, 0.5, 1.0, 150.25, 1e6])
def test_sqrt_price_round_trip(price: float) -> None:
    recovered = sqrt_price_to_price(price_to_sqrt_price(price))
    assert recovered == pytest.approx(price, rel=1e-6)


def test_sqrt_price_edge_values() -> None:
    assert price_to_sqrt_price(1.0) == Q64
    assert sqrt_price_to_decimal(Q64 * 3 + Q64 // 2) == 3.5
    assert sqrt_price_to_price(0) == 0.0
    assert sqrt_price_to_price(-Q64) == 0.0
    assert price_to_sqrt_price(-1.0) == 0
    assert price_to_sqrt_price(math.nan) == 0
    assert sqrt_price_to_decimal(Q64 * 10**400) == 0.0


@pytest.mark.parametrize("tick", [-5000, -1, 0, 1, 1234, 20000])
def test_tick_round_trip(tick: int) -> None:
    assert price_to_tick(tick_to_price(tick)) == tick


def test_tick_conversion_rejects_invalid_input() -> None:
    assert tick_to_price(10**9) == 0.0
    assert price_to_tick(0.0) == 0
    assert price_to_tick(-3.0) == 0


def test_token_amounts_follow_price_region() -> None:
    lower = price_to_sqrt_price(0.5)
    upper = price_to_sqrt_price(2.0)
    liquidity = 10**12

    in_range_a, in_range_b = token_amounts_from_liquidity(liquidity, Q64, lower, upper, 6, 6)
    assert in_range_a > 0 and in_range_b > 0

    below_a, below_b = token_amounts_from_liquidity(liquidity, price_to_sqrt_price(0.25), lower, upper, 6, 6)
    assert below_a > 0 and below_b == 0.0

    above_a, above_b = token_amounts_from_liquidity(liquidity, price_to_sqrt_price(4.0), lower, upper, 6, 6)
    assert above_a == 0.0 and above_b > 0

    assert token_amounts_from_liquidity(0, Q64, lower, upper, 6, 6) == (0.0, 0.0)
    assert token_amounts_from_liquidity(liquidity, Q64, upper, lower, 6, 6) == (0.0, 0.0)


def test_liquidity_from_amounts_is_consistent_with_token_amounts() -> None:
    lower = price_to_sqrt_price(0.5)
    upper = price_to_sqrt_price(2.0)
    amount_a, amount_b = 1_000_000, 1_000_000

    liquidity = liquidity_from_amounts(amount_a, amount_b, Q64, lower, upper)
    assert liquidity > 0

    held_a, held_b = token_amounts_from_liquidity(liquidity, Q64, lower, upper, 0, 0)
    assert held_a <= amount_a * (1 + 1e-9)
    assert held_b <= amount_b * (1 + 1e-9)
    assert max(held_a / amount_a, held_b / amount_b) == pytest.approx(1.0, rel=1e-6)

    assert liquidity_from_amounts(amount_a, amount_b, Q64, upper, lower) == 0
    assert liquidity_from_amounts(0, 0, Q64, lower, upper) == 0


def test_sqrt_range_check_agrees_with_tick_range_check() -> None:
    tick_lower, tick_upper = -100, 250
    sqrt_lower = price_to_sqrt_price(tick_to_price(tick_lower))
    sqrt_upper = price_to_sqrt_price(tick_to_price(tick_upper))
    for tick in (-101, -100, 0, 250, 251):
        sqrt_current = price_to_sqrt_price(tick_to_price(tick))
        assert is_position_in_range(tick, tick_lower, tick_upper) == is_sqrt_price_in_range(
            sqrt_current, sqrt_lower, sqrt_upper
        )


def test_fees_and_rewards_from_growth() -> None:
    liquidity = 1_000
    fees_a, fees_b = fees_from_growth(liquidity, 5 * Q64, Q64 // 2, 0, 0)
    assert (fees_a, fees_b) == (5_000, 500)

    assert fees_from_growth(liquidity, Q64, Q64, 2 * Q64, 0) == (0, 1_000)
    assert reward_with_scaling(10, 3 * Q64, Q64) == 20


def test_impermanent_loss_against_hodl() -> None:
    result = impermanent_loss(1.0, 100.0, 100.0, 1.0, 400.0, 1.0, 400.0)
    assert result.hodl_value == pytest.approx(500.0)
    assert result.impermanent_loss == pytest.approx(100.0)
    assert result.percentage == pytest.approx(50.0)

    zero = impermanent_loss(0.0, 0.0, 0.0, 0.0, 1.0, 1.0, 0.0)
    assert zero.percentage == 0.0
