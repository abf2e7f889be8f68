from __future__ import annotations

from typing import Dict, List

import pytest
from solders.pubkey import Pubkey

from solana_lp_pnl.config.settings import BackfillConfig
from solana_lp_pnl.datalake.schemas import LivePosition, PoolState, PositionEntryRecord, Provenance
from solana_lp_pnl.datalake.storage import InMemoryKeyValueStore, PositionLedger
from solana_lp_pnl.reconciliation.backfill import AutoBackfill
from solana_lp_pnl.utils.constants import AUTO_BACKFILL_SIGNATURE, MS_PER_DAY, Q64, SOL_MINT, now_ms

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class DummyOracle:
    def __init__(self, prices: Dict[str, float]) -> None:
        self.prices = prices
        self.calls: List[str] = []

    def get_price_usd(self, mint: str) -> float:
        self.calls.append(mint)
        return self.prices.get(mint, 0.0)


def _live(*, decimals=None) -> LivePosition:
    return LivePosition(
        position_address=str(Pubkey.new_unique()),
        pool_address=str(Pubkey.new_unique()),
        token_a_amount=500 * 10**9,
        token_b_amount=300 * 10**9,
        unclaimed_fee_a=0,
        unclaimed_fee_b=0,
        pool=PoolState(SOL_MINT, USDC_MINT, Q64, Q64 // 2, Q64 * 2),
        token_a_decimals=decimals,
        token_b_decimals=decimals,
    )


def _measured_entry(position: LivePosition, clock: int) -> PositionEntryRecord:
    return PositionEntryRecord(
        position_address=position.position_address,
        pool_address=position.pool_address,
        entry_timestamp=clock - MS_PER_DAY,
        token_a_mint=SOL_MINT,
        token_b_mint=USDC_MINT,
        initial_token_a_amount=position.token_a_amount,
        initial_token_b_amount=position.token_b_amount,
        entry_token_a_price_usd=1.0,
        entry_token_b_price_usd=2.0,
        entry_pool_price=2.0,
        initial_value_usd=1100.0,
        token_a_decimals=9,
        token_b_decimals=9,
    )


def _backfill(ledger: PositionLedger, oracle: DummyOracle, sleeps: List[float], clock: int, **config) -> AutoBackfill:
    return AutoBackfill(
        ledger,
        oracle,
        config=BackfillConfig(inter_position_delay_seconds=0.25, **config),
        sleep=sleeps.append,
        clock=lambda: clock,
    )


def test_backfill_creates_estimated_entries_for_untracked_positions() -> None:
    clock = now_ms()
    ledger = PositionLedger(InMemoryKeyValueStore())
    oracle = DummyOracle({SOL_MINT: 1.0, USDC_MINT: 2.0})
    sleeps: List[float] = []
    tracked, first, second = _live(decimals=9), _live(), _live(decimals=9)
    ledger.save_entry(_measured_entry(tracked, clock))

    status = _backfill(ledger, oracle, sleeps, clock).run([tracked, first, second])

    assert status.completed and not status.in_progress
    assert (status.created, status.skipped, status.failed) == (2, 1, 0)
    assert status.last_position_count == 3
    assert sleeps == [0.25, 0.25]

    entry = ledger.get_entry(first.position_address)
    assert entry.provenance == Provenance.ESTIMATED
    assert entry.tx_signature == AUTO_BACKFILL_SIGNATURE
    assert entry.entry_timestamp == clock - 7 * MS_PER_DAY
    assert entry.initial_value_usd == pytest.approx(1100.0 * 0.95)
    assert entry.entry_token_a_price_usd == pytest.approx(0.95)
    assert entry.entry_pool_price == pytest.approx(1.9)
    assert (entry.token_a_decimals, entry.token_b_decimals) == (9, 9)
    assert ledger.get_entry(tracked.position_address).provenance == Provenance.MEASURED


def test_backfill_reruns_only_when_position_count_grows() -> None:
    clock = now_ms()
    ledger = PositionLedger(InMemoryKeyValueStore())
    oracle = DummyOracle({SOL_MINT: 1.0, USDC_MINT: 2.0})
    backfill = _backfill(ledger, oracle, [], clock)
    positions = [_live(decimals=9)]

    backfill.run(positions)
    calls_after_first = len(oracle.calls)
    backfill.run(positions)

    assert len(oracle.calls) == calls_after_first
    assert backfill.status.created == 1

    positions.append(_live(decimals=6))
    backfill.run(positions)

    assert backfill.status.created == 2
    assert backfill.status.skipped == 1
    assert ledger.get_entry(positions[1].position_address).token_b_decimals == 6


def test_backfill_with_no_positions_does_not_complete() -> None:
    backfill = _backfill(PositionLedger(InMemoryKeyValueStore()), DummyOracle({}), [], now_ms())

    status = backfill.run([])

    assert not status.completed
    assert backfill.should_run(1)


def test_disabled_backfill_writes_nothing() -> None:
    ledger = PositionLedger(InMemoryKeyValueStore())
    backfill = _backfill(ledger, DummyOracle({}), [], now_ms(), enabled=False)

    backfill.run([_live()])

    assert ledger.get_all_entries() == {}


def test_invalid_position_counts_as_failure() -> None:
    ledger = PositionLedger(InMemoryKeyValueStore())
    bad = _live()
    bad.position_address = "bad-address"

    status = _backfill(ledger, DummyOracle({}), [], now_ms()).run([bad])

    assert status.failed == 1
    assert status.created == 0
    assert ledger.get_all_entries() == {}
