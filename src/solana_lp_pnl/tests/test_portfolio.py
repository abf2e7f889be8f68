from __future__ import annotations

from typing import Dict, Iterable, List

import pytest
from solders.pubkey import Pubkey

from solana_lp_pnl.analytics.portfolio import PortfolioTracker
from solana_lp_pnl.config.settings import PnLConfig
from solana_lp_pnl.datalake.schemas import LivePosition, PoolState, Provenance
from solana_lp_pnl.datalake.storage import InMemoryKeyValueStore, PositionLedger
from solana_lp_pnl.utils.constants import Q64, SOL_MINT, now_ms
from solana_lp_pnl.utils.errors import LedgerValidationError

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class DummyOracle:
    def __init__(self, prices: Dict[str, float]) -> None:
        self.prices = dict(prices)
        self.requests: List[List[str]] = []

    def get_batch_prices_usd(self, mints: Iterable[str]) -> Dict[str, float]:
        batch = list(mints)
        self.requests.append(batch)
        return {mint: self.prices.get(mint, 0.0) for mint in batch}


def _live(*, decimals: bool = True, fee_a: int = 0) -> LivePosition:
    return LivePosition(
        position_address=str(Pubkey.new_unique()),
        pool_address=str(Pubkey.new_unique()),
        token_a_amount=500 * 10**9,
        token_b_amount=300 * 10**9,
        unclaimed_fee_a=fee_a,
        unclaimed_fee_b=0,
        pool=PoolState(SOL_MINT, USDC_MINT, Q64, Q64 // 2, Q64 * 2),
        token_a_decimals=9 if decimals else None,
        token_b_decimals=9 if decimals else None,
    )


def _tracker(prices=None, **config) -> PortfolioTracker:
    ledger = PositionLedger(InMemoryKeyValueStore())
    oracle = DummyOracle(prices or {SOL_MINT: 1.0, USDC_MINT: 2.0})
    clock_value = now_ms()
    return PortfolioTracker(ledger, oracle, config=PnLConfig(**config), clock=lambda: clock_value)


def test_record_open_writes_measured_entry_at_current_prices() -> None:
    tracker = _tracker()
    live = _live()

    result = tracker.record_position_open(live, tx_signature="sig-open")

    assert result.written
    entry = tracker.ledger.get_entry(live.position_address)
    assert entry.initial_value_usd == pytest.approx(1100.0)
    assert entry.entry_pool_price == pytest.approx(2.0)
    assert entry.provenance == Provenance.MEASURED
    assert entry.tx_signature == "sig-open"
    assert entry.initial_token_a_amount == 500 * 10**9


def test_record_open_requires_decimals() -> None:
    tracker = _tracker()

    with pytest.raises(LedgerValidationError):
        tracker.record_position_open(_live(decimals=False))


def test_positions_without_entry_are_excluded() -> None:
    tracker = _tracker()
    tracked, untracked = _live(), _live()
    tracker.record_position_open(tracked)

    pnls = tracker.positions_pnl([tracked, untracked])

    assert [pnl.position_address for pnl in pnls] == [tracked.position_address]
    assert pnls[0].unrealized_pnl_usd == pytest.approx(0.0)
    assert tracker.positions_pnl([]) == []


def test_price_moves_flow_into_pnl_and_stats() -> None:
    tracker = _tracker()
    live = _live()
    tracker.record_position_open(live)
    tracker._oracle.prices[SOL_MINT] = 1.2

    pnls = tracker.positions_pnl([live])
    stats = tracker.aggregated_stats(pnls)

    assert pnls[0].unrealized_pnl_usd == pytest.approx(100.0)
    assert stats.total_profit == pytest.approx(100.0)
    assert stats.total_invested == pytest.approx(1100.0)
    assert stats.open_positions_count == 1
    assert stats.closed_positions_count == 0


def test_claimed_fees_are_added_to_position_pnl() -> None:
    tracker = _tracker()
    live = _live(fee_a=10 * 10**9)
    tracker.record_position_open(live)

    result = tracker.record_claimed_fees(live)

    assert result.written
    assert tracker.ledger.get_total_claimed_fees_value(live.position_address) == pytest.approx(10.0)
    pnl = tracker.positions_pnl([live])[0]
    assert pnl.claimed_fees_usd == pytest.approx(10.0)
    assert pnl.total_fees_usd == pytest.approx(20.0)


def test_record_close_realizes_pnl_against_entry() -> None:
    tracker = _tracker()
    live = _live(fee_a=5 * 10**9)
    tracker.record_position_open(live)
    tracker._oracle.prices[USDC_MINT] = 1.5

    result = tracker.record_position_close(live, tx_signature="sig-close")

    assert result.written
    exit_record = tracker.ledger.get_exit(live.position_address)
    assert exit_record.final_value_usd == pytest.approx(950.0)
    assert exit_record.realized_pnl_usd == pytest.approx(-150.0)
    assert exit_record.total_fees_collected_usd == pytest.approx(5.0)
    assert exit_record.total_fees_collected_a == 5 * 10**9

    closed = tracker.closed_positions()
    assert len(closed) == 1
    stats = tracker.aggregated_stats([])
    assert stats.closed_positions_count == 1
    assert stats.total_profit == pytest.approx(-150.0)


def test_record_close_without_entry_raises() -> None:
    tracker = _tracker()

    with pytest.raises(LedgerValidationError):
        tracker.record_position_close(_live())


def test_snapshots_respect_tracking_threshold_and_feed_chart() -> None:
    tracker = _tracker(min_position_value_usd_tracking=500.0)
    live, small = _live(), _live()
    small.token_a_amount = 10**9
    small.token_b_amount = 0
    tracker.record_position_open(live)
    tracker.record_position_open(small)

    pnls = tracker.positions_pnl([live, small])
    written = tracker.record_snapshots(pnls)

    assert written == 1
    assert list(tracker.ledger.get_all_snapshots()) == [live.position_address]

    series = tracker.chart_data(pnls, "1H")
    assert len(series) == 30
    assert series[-1].open_positions_value == pytest.approx(1100.0)
    assert not series[-1].is_complete
    assert not series[0].is_complete
    assert series[0].open_positions_value == 0.0
