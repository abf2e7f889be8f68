"""Command line entrypoint for the DAMM v2 position P&L engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .analytics.aggregator import TIMEFRAMES
from .analytics.portfolio import PortfolioTracker
from .analytics.recorder import SnapshotRecorder
from .config.settings import AppConfig, get_app_config
from .dashboard.utils import to_serializable
from .datalake.schemas import LivePosition
from .datalake.storage import PositionLedger, SQLiteKeyValueStore
from .ingestion.history import SolanaHistoryClient
from .ingestion.positions import JsonPositionSource, LivePositionSource
from .ingestion.pricing import PriceOracle
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .reconciliation.backfill import AutoBackfill
from .reconciliation.historical import HistoricalScanner
from .utils.errors import PnLEngineError
from .utils.validators import is_valid_address

logger = get_logger(__name__)


@contextmanager
def performance_monitor(operation_name: str):
    start_time = time.perf_counter()
    try:
        yield
    finally:
        METRICS.observe(f"cli.{operation_name}.duration_seconds", time.perf_counter() - start_time)
        METRICS.increment(f"cli.{operation_name}.calls_total")


@dataclass(slots=True)
class Services:
    config: AppConfig
    ledger: PositionLedger
    oracle: PriceOracle
    source: LivePositionSource
    tracker: PortfolioTracker
    backfill: AutoBackfill
    scanner: HistoricalScanner


def build_services(config: Optional[AppConfig] = None) -> Services:
    config = config or get_app_config()
    ledger = PositionLedger(
        SQLiteKeyValueStore(config.storage.database_path),
        max_snapshots_per_position=config.pnl.max_snapshots_per_position,
    )
    oracle = PriceOracle(config.data_sources)
    return Services(
        config=config,
        ledger=ledger,
        oracle=oracle,
        source=JsonPositionSource(config.wallet.positions_file),
        tracker=PortfolioTracker(ledger, oracle, config=config.pnl),
        backfill=AutoBackfill(ledger, oracle, config=config.backfill),
        scanner=HistoricalScanner(
            ledger, oracle, SolanaHistoryClient(config.rpc), config=config.historical_scan
        ),
    )


def _emit(payload: Any) -> None:
    print(json.dumps(to_serializable(payload), indent=2, sort_keys=True))


def _find_position(positions: Sequence[LivePosition], address: str) -> LivePosition:
    for position in positions:
        if position.position_address == address:
            return position
    raise PnLEngineError(f"Position {address} not found in live positions")


def _open_pnls(services: Services, wallet: str, *, backfill: bool = True):
    positions = services.source.list_positions(wallet)
    if backfill:
        services.backfill.run(positions)
    return services.tracker.positions_pnl(positions)


def cmd_pnl(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("pnl"):
        _emit(_open_pnls(services, args.wallet, backfill=not args.no_backfill))


def cmd_stats(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("stats"):
        pnls = _open_pnls(services, args.wallet, backfill=not args.no_backfill)
        _emit(services.tracker.aggregated_stats(pnls))


def cmd_chart(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("chart"):
        pnls = _open_pnls(services, args.wallet, backfill=not args.no_backfill)
        _emit(services.tracker.chart_data(pnls, args.timeframe))


def cmd_backfill(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("backfill"):
        _emit(services.backfill.run(services.source.list_positions(args.wallet)))


def cmd_scan(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("scan"):
        _emit(services.scanner.scan(args.wallet))


def cmd_snapshot(services: Services, args: argparse.Namespace) -> None:
    with performance_monitor("snapshot"):
        pnls = _open_pnls(services, args.wallet, backfill=not args.no_backfill)
        written = services.tracker.record_snapshots(pnls)
    _emit({"positions": len(pnls), "snapshots_written": written})


def cmd_open(services: Services, args: argparse.Namespace) -> None:
    position = _find_position(services.source.list_positions(args.wallet), args.position)
    _emit(services.tracker.record_position_open(position, tx_signature=args.tx))


def cmd_close(services: Services, args: argparse.Namespace) -> None:
    position = _find_position(services.source.list_positions(args.wallet), args.position)
    _emit(services.tracker.record_position_close(position, tx_signature=args.tx))


def cmd_claim(services: Services, args: argparse.Namespace) -> None:
    position = _find_position(services.source.list_positions(args.wallet), args.position)
    _emit(services.tracker.record_claimed_fees(position))


async def run_record_loop(
    services: Services,
    wallet: str,
    interval_seconds: Optional[float] = None,
    max_cycles: Optional[int] = None,
    *,
    scan: bool = True,
) -> SnapshotRecorder:
    recorder = SnapshotRecorder(
        services.tracker,
        services.source,
        wallet,
        backfill=services.backfill,
        scanner=services.scanner if scan else None,
        interval_seconds=interval_seconds,
    )
    await recorder.start(max_cycles=max_cycles)
    try:
        await recorder.wait()
    finally:
        await recorder.stop()
    return recorder


def cmd_record_loop(services: Services, args: argparse.Namespace) -> None:
    recorder = asyncio.run(
        run_record_loop(
            services, args.wallet, args.interval, args.max_cycles, scan=not args.no_scan
        )
    )
    logger.info("Snapshot loop finished after %d cycles", recorder.cycles)


COMMANDS = {
    "pnl": cmd_pnl,
    "stats": cmd_stats,
    "chart": cmd_chart,
    "backfill": cmd_backfill,
    "scan": cmd_scan,
    "snapshot": cmd_snapshot,
    "record-loop": cmd_record_loop,
    "open": cmd_open,
    "close": cmd_close,
    "claim": cmd_claim,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track P&L of DAMM v2 liquidity positions")
    parser.add_argument("--wallet", help="Wallet address (defaults to wallet.public_key)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("pnl", "Per-position P&L of open positions"),
        ("stats", "Aggregate statistics over open and closed positions"),
        ("snapshot", "Record one snapshot of every tracked position"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--no-backfill", action="store_true", help="Skip auto-backfill of missing entries")

    chart = subparsers.add_parser("chart", help="Aggregated P&L time series")
    chart.add_argument("--timeframe", choices=sorted(TIMEFRAMES), default=None)
    chart.add_argument("--no-backfill", action="store_true")

    subparsers.add_parser("backfill", help="Estimate entries for positions missing one")
    subparsers.add_parser("scan", help="Reconstruct closed positions from wallet history")

    loop = subparsers.add_parser("record-loop", help="Record snapshots on an interval")
    loop.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between snapshot passes (default: pnl.snapshot_interval_seconds)",
    )
    loop.add_argument("--max-cycles", type=int, default=None)
    loop.add_argument("--no-scan", action="store_true", help="Do not run the historical scan")

    for name, help_text in (
        ("open", "Record the entry of a newly opened position"),
        ("close", "Record the exit of a position from its final state"),
        ("claim", "Record the currently unclaimed fees of a position as claimed"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("position", help="Position address")
        if name != "claim":
            sub.add_argument("--tx", default=None, help="Transaction signature")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = get_app_config()
    bootstrap_observability(config)

    args.wallet = args.wallet or config.wallet.public_key
    if not args.wallet or not is_valid_address(args.wallet):
        parser.error("a valid --wallet address is required (or set WALLET__PUBLIC_KEY)")

    services = build_services(config)
    try:
        COMMANDS[args.command](services, args)
    except PnLEngineError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
