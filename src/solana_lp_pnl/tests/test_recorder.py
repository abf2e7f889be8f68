from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Iterable, List

import pytest
from solders.pubkey import Pubkey

from solana_lp_pnl.analytics.portfolio import PortfolioTracker
from solana_lp_pnl.analytics.recorder import SnapshotRecorder
from solana_lp_pnl.config.settings import BackfillConfig, PnLConfig, get_app_config
from solana_lp_pnl.datalake.schemas import (
    LivePosition,
    PoolState,
    PositionEntryRecord,
    Provenance,
    ScanStatus,
)
from solana_lp_pnl.datalake.storage import InMemoryKeyValueStore, PositionLedger
from solana_lp_pnl.monitoring.metrics import METRICS
from solana_lp_pnl.reconciliation.backfill import AutoBackfill
from solana_lp_pnl.utils.constants import HISTORICAL_POOL_SENTINEL, Q64, SOL_MINT, now_ms
from solana_lp_pnl.utils.errors import PositionSourceError

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class DummyOracle:
    def get_batch_prices_usd(self, mints: Iterable[str]) -> Dict[str, float]:
        return {mint: 1.0 for mint in mints}

    def get_price_usd(self, mint: str) -> float:
        return 1.0


class StaticSource:
    def __init__(self, positions: List[LivePosition], failures: int = 0) -> None:
        self.positions = positions
        self.failures = failures
        self.calls = 0

    def list_positions(self, wallet: str) -> List[LivePosition]:
        self.calls += 1
        if self.calls <= self.failures:
            raise PositionSourceError("export locked")
        return list(self.positions)


class FakeScanner:
    def __init__(self) -> None:
        self.wallets: List[str] = []

    def scan(self, wallet: str) -> ScanStatus:
        self.wallets.append(wallet)
        return ScanStatus(last_scan_time=1, positions_found=2)


class BlockingScanner:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def scan(self, wallet: str) -> ScanStatus:
        self.started.set()
        self.release.wait(5)
        return ScanStatus(positions_found=9)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    get_app_config.cache_clear()
    yield
    get_app_config.cache_clear()


def _live_position() -> LivePosition:
    return LivePosition(
        position_address=str(Pubkey.new_unique()),
        pool_address=str(Pubkey.new_unique()),
        token_a_amount=10**9,
        token_b_amount=10**9,
        unclaimed_fee_a=0,
        unclaimed_fee_b=0,
        pool=PoolState(SOL_MINT, USDC_MINT, Q64, Q64 // 2, Q64 * 2),
        token_a_decimals=9,
        token_b_decimals=9,
    )


def _tracker_with_position() -> tuple:
    ledger = PositionLedger(InMemoryKeyValueStore())
    tracker = PortfolioTracker(ledger, DummyOracle(), config=PnLConfig())
    live = _live_position()
    tracker.record_position_open(live)
    return tracker, live


def test_recorder_writes_snapshots_each_cycle_and_runs_scan() -> None:
    tracker, live = _tracker_with_position()
    scanner = FakeScanner()
    recorder = SnapshotRecorder(
        tracker,
        StaticSource([live]),
        WALLET,
        scanner=scanner,
        interval_seconds=0,
        scan_delay_seconds=0,
    )

    async def scenario() -> None:
        await recorder.start(max_cycles=2)
        assert recorder.is_running()
        await recorder.wait()
        await recorder.stop()

    asyncio.run(scenario())

    assert recorder.cycles == 2
    assert len(tracker.ledger.get_snapshots(live.position_address)) == 2
    assert scanner.wallets == [WALLET]
    assert recorder.last_scan.positions_found == 2
    assert not recorder.is_running()


def test_failed_cycle_is_logged_and_loop_continues() -> None:
    tracker, live = _tracker_with_position()
    source = StaticSource([live], failures=1)
    recorder = SnapshotRecorder(tracker, source, WALLET, interval_seconds=0)
    before = METRICS.get("recorder.failures")

    async def scenario() -> None:
        await recorder.start(max_cycles=2)
        await recorder.wait()

    asyncio.run(scenario())

    assert METRICS.get("recorder.failures") == before + 1
    assert source.calls == 2
    assert len(tracker.ledger.get_snapshots(live.position_address)) == 1


def test_scan_result_after_stop_is_discarded() -> None:
    tracker, live = _tracker_with_position()
    scanner = BlockingScanner()
    recorder = SnapshotRecorder(
        tracker,
        StaticSource([live]),
        WALLET,
        scanner=scanner,
        interval_seconds=3_600,
        scan_delay_seconds=0,
    )

    async def scenario() -> None:
        await recorder.start()
        await asyncio.to_thread(scanner.started.wait, 5)
        await recorder.stop()
        scanner.release.set()

    asyncio.run(scenario())

    assert recorder.last_scan is None
    assert not recorder.is_running()
    assert recorder.cycles == 1


def test_record_once_counts_written_snapshots() -> None:
    tracker, live = _tracker_with_position()
    recorder = SnapshotRecorder(tracker, StaticSource([live]), WALLET, interval_seconds=60)

    assert recorder.record_once() == 1
    assert not recorder.is_running()


class SlowStore(InMemoryKeyValueStore):
    def set(self, key: str, value: str) -> None:
        time.sleep(0.02)
        super().set(key, value)


class HistoryWritingScanner:
    def __init__(self, ledger: PositionLedger, count: int) -> None:
        self.ledger = ledger
        self.count = count

    def scan(self, wallet: str) -> ScanStatus:
        for index in range(self.count):
            self.ledger.save_entry(
                PositionEntryRecord(
                    position_address=f"hist-{index + 1}ZxSigHistKKKKKK",
                    pool_address=HISTORICAL_POOL_SENTINEL,
                    entry_timestamp=now_ms() - 60_000,
                    token_a_mint=SOL_MINT,
                    token_b_mint=USDC_MINT,
                    initial_token_a_amount=10**9,
                    initial_token_b_amount=10**6,
                    entry_token_a_price_usd=1.0,
                    entry_token_b_price_usd=1.0,
                    entry_pool_price=1.0,
                    initial_value_usd=2.0,
                    token_a_decimals=9,
                    token_b_decimals=6,
                    provenance=Provenance.ESTIMATED,
                )
            )
        return ScanStatus(positions_found=self.count)


def test_backfill_and_scan_running_together_keep_every_entry() -> None:
    ledger = PositionLedger(SlowStore())
    oracle = DummyOracle()
    tracker = PortfolioTracker(ledger, oracle, config=PnLConfig())
    positions = [_live_position() for _ in range(6)]
    recorder = SnapshotRecorder(
        tracker,
        StaticSource(positions),
        WALLET,
        backfill=AutoBackfill(ledger, oracle, config=BackfillConfig(inter_position_delay_seconds=0)),
        scanner=HistoryWritingScanner(ledger, 6),
        interval_seconds=3_600,
        scan_delay_seconds=0,
    )

    async def scenario() -> None:
        await recorder.start(max_cycles=1)
        await recorder.wait()

    asyncio.run(scenario())

    entries = ledger.get_all_entries()
    assert len(entries) == 12
    assert {position.position_address for position in positions} <= set(entries)
    assert recorder.last_scan.positions_found == 6
