"""Portfolio summary statistics and time-bucketed aggregated P&L series."""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from ..config.settings import GapFillMode
from ..datalake.schemas import (
    AggregateStats,
    AggregatedPnLDataPoint,
    ClosedPositionSummary,
    PositionEntryRecord,
    PositionExitRecord,
    PositionPnLCalculation,
    PositionSnapshot,
    Provenance,
)
from ..monitoring.logger import get_logger
from ..utils.constants import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE, now_ms
from ..utils.validators import safe_divide

_logger = get_logger(__name__)

DEFAULT_LIVE_WINDOW_MS = 60_000


@dataclass(frozen=True, slots=True)
class TimeframeConfig:
    duration_ms: int
    interval_ms: int
    points: int
    label_format: str


TIMEFRAMES: Dict[str, TimeframeConfig] = {
    "1H": TimeframeConfig(MS_PER_HOUR, 2 * MS_PER_MINUTE, 30, "%H:%M"),
    "1D": TimeframeConfig(MS_PER_DAY, 30 * MS_PER_MINUTE, 48, "%H:%M"),
    "1W": TimeframeConfig(7 * MS_PER_DAY, 4 * MS_PER_HOUR, 42, "%b %d"),
    "1M": TimeframeConfig(30 * MS_PER_DAY, MS_PER_DAY, 30, "%b %d"),
    "3M": TimeframeConfig(90 * MS_PER_DAY, 3 * MS_PER_DAY, 30, "%b %d"),
    "1Y": TimeframeConfig(365 * MS_PER_DAY, 7 * MS_PER_DAY, 52, "%b %Y"),
    "MAX": TimeframeConfig(365 * MS_PER_DAY, 7 * MS_PER_DAY, 52, "%b %Y"),
}


def is_valid_timeframe(timeframe: str) -> bool:
    return timeframe in TIMEFRAMES


def format_bucket_label(timestamp_ms: int, timeframe: str) -> str:
    config = TIMEFRAMES[timeframe]
    moment = datetime.fromtimestamp(timestamp_ms / 1000, timezone.utc)
    return moment.strftime(config.label_format)


@dataclass(slots=True)
class _BucketValue:
    value: float
    pnl: float
    fees: float


def _from_snapshot(snapshot: PositionSnapshot) -> _BucketValue:
    return _BucketValue(snapshot.value_usd, snapshot.pnl_usd, snapshot.fees_usd)


def _nearest(snapshots: Sequence[PositionSnapshot], timestamp: int) -> PositionSnapshot:
    return min(snapshots, key=lambda item: abs(item.timestamp - timestamp))


def _interpolated(snapshots: Sequence[PositionSnapshot], timestamp: int) -> _BucketValue:
    ordered = sorted(snapshots, key=lambda item: item.timestamp)
    times = [item.timestamp for item in ordered]
    index = bisect.bisect_left(times, timestamp)
    if index == 0 or index >= len(ordered):
        return _from_snapshot(_nearest(ordered, timestamp))
    before, after = ordered[index - 1], ordered[index]
    if after.timestamp == timestamp:
        return _from_snapshot(after)
    weight = safe_divide(timestamp - before.timestamp, after.timestamp - before.timestamp)

    def lerp(left: float, right: float) -> float:
        return left + (right - left) * weight

    return _BucketValue(
        lerp(before.value_usd, after.value_usd),
        lerp(before.pnl_usd, after.pnl_usd),
        lerp(before.fees_usd, after.fees_usd),
    )


def _historical_value(
    snapshots: Sequence[PositionSnapshot],
    timestamp: int,
    gap_fill: GapFillMode,
    max_distance_ms: int,
) -> Optional[_BucketValue]:
    if gap_fill == GapFillMode.INTERPOLATE:
        return _interpolated(snapshots, timestamp)
    nearest = _nearest(snapshots, timestamp)
    if gap_fill == GapFillMode.MARK_GAP and abs(nearest.timestamp - timestamp) > max_distance_ms:
        return None
    return _from_snapshot(nearest)


def generate_aggregated_pnl_time_series(
    open_pnls: Sequence[PositionPnLCalculation],
    timeframe: str,
    snapshots: Optional[Mapping[str, Sequence[PositionSnapshot]]] = None,
    closed: Optional[Sequence[ClosedPositionSummary]] = None,
    *,
    now: Optional[int] = None,
    gap_fill: GapFillMode = GapFillMode.MARK_GAP,
    live_window_ms: int = DEFAULT_LIVE_WINDOW_MS,
) -> List[AggregatedPnLDataPoint]:
    """Build one aggregated data point per bucket of ``timeframe``, oldest first.

    Buckets more than ``live_window_ms`` in the past are valued from snapshot
    history according to ``gap_fill``. Without history a position uses its live
    figures, except under ``MARK_GAP`` where it is left out of the bucket. Closed positions contribute cumulatively from their exit
    timestamp onwards.
    """

    if timeframe not in TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    closed = closed or []
    if not open_pnls and not closed:
        return []

    snapshots = snapshots or {}
    config = TIMEFRAMES[timeframe]
    current = now if now is not None else now_ms()
    start = current - config.duration_ms

    series: List[AggregatedPnLDataPoint] = []
    for index in range(config.points):
        bucket_ts = start + index * config.interval_ms
        is_past = current - bucket_ts > live_window_ms

        open_value = 0.0
        open_pnl = 0.0
        fees = 0.0
        invested = 0.0
        complete = True
        for pnl in open_pnls:
            history = snapshots.get(pnl.position_address)
            if is_past and history:
                value = _historical_value(history, bucket_ts, gap_fill, config.interval_ms)
                if value is None:
                    complete = False
                    continue
            elif is_past and gap_fill == GapFillMode.MARK_GAP:
                complete = False
                continue
            else:
                value = _BucketValue(
                    pnl.current_value_usd,
                    pnl.unrealized_pnl_with_fees_usd,
                    pnl.unclaimed_fees_usd,
                )
            open_value += value.value
            open_pnl += value.pnl
            fees += value.fees
            invested += pnl.initial_value_usd

        realized = 0.0
        for summary in closed:
            if summary.exit_timestamp <= bucket_ts:
                realized += summary.realized_pnl_usd
                fees += summary.fees_usd
                invested += summary.initial_value_usd

        total_pnl = open_pnl + realized
        series.append(
            AggregatedPnLDataPoint(
                timestamp=bucket_ts,
                date=format_bucket_label(bucket_ts, timeframe),
                open_positions_value=open_value,
                open_positions_unrealized_pnl=open_pnl,
                closed_positions_realized_pnl=realized,
                total_pnl=total_pnl,
                total_pnl_percentage=safe_divide(total_pnl * 100, invested),
                total_fees_earned=fees,
                total_invested=invested,
                total_current_value=open_value,
                is_complete=complete,
            )
        )
    return series


def calculate_aggregate_stats(open_pnls: Sequence[PositionPnLCalculation]) -> AggregateStats:
    if not open_pnls:
        return AggregateStats()
    net_worth = sum(pnl.current_value_usd for pnl in open_pnls)
    profit = sum(pnl.unrealized_pnl_with_fees_usd for pnl in open_pnls)
    invested = sum(pnl.initial_value_usd for pnl in open_pnls)
    fees = sum(pnl.total_fees_usd for pnl in open_pnls)
    count = len(open_pnls)
    return AggregateStats(
        total_net_worth=net_worth,
        total_profit=profit,
        total_invested=invested,
        fee_earned=fees,
        open_positions_count=count,
        avg_position_size=safe_divide(invested, count),
        total_profit_percentage=safe_divide(profit * 100, invested),
        unpriced_positions_count=sum(1 for pnl in open_pnls if not pnl.price_available),
        estimated_positions_count=sum(
            1 for pnl in open_pnls if pnl.provenance == Provenance.ESTIMATED
        ),
    )


def combine_with_closed(stats: AggregateStats, closed: Sequence[ClosedPositionSummary]) -> AggregateStats:
    """Fold realized results of closed positions into open-position statistics."""

    profit = stats.total_profit + sum(item.realized_pnl_usd for item in closed)
    invested = stats.total_invested + sum(item.initial_value_usd for item in closed)
    fees = stats.fee_earned + sum(item.fees_usd for item in closed)
    position_count = stats.open_positions_count + len(closed)
    return AggregateStats(
        total_net_worth=stats.total_net_worth,
        total_profit=profit,
        total_invested=invested,
        fee_earned=fees,
        open_positions_count=stats.open_positions_count,
        closed_positions_count=len(closed),
        avg_position_size=safe_divide(invested, position_count),
        total_profit_percentage=safe_divide(profit * 100, invested),
        unpriced_positions_count=stats.unpriced_positions_count,
        estimated_positions_count=stats.estimated_positions_count
        + sum(1 for item in closed if item.provenance == Provenance.ESTIMATED),
    )


def build_closed_position_summaries(
    entries: Mapping[str, PositionEntryRecord],
    exits: Mapping[str, PositionExitRecord],
) -> List[ClosedPositionSummary]:
    summaries: List[ClosedPositionSummary] = []
    for position, exit_record in exits.items():
        entry = entries.get(position)
        if entry is None:
            _logger.debug("Exit %s has no paired entry; skipping", position)
            continue
        provenance = (
            Provenance.ESTIMATED
            if Provenance.ESTIMATED in (entry.provenance, exit_record.provenance)
            else Provenance.MEASURED
        )
        summaries.append(
            ClosedPositionSummary(
                position_address=position,
                exit_timestamp=exit_record.exit_timestamp,
                realized_pnl_usd=exit_record.realized_pnl_usd,
                fees_usd=exit_record.total_fees_collected_usd,
                initial_value_usd=entry.initial_value_usd,
                provenance=provenance,
            )
        )
    return summaries


def create_position_snapshot(pnl: PositionPnLCalculation, now: Optional[int] = None) -> PositionSnapshot:
    return PositionSnapshot(
        timestamp=now if now is not None else now_ms(),
        value_usd=pnl.current_value_usd,
        fees_usd=pnl.unclaimed_fees_usd,
        pnl_usd=pnl.unrealized_pnl_with_fees_usd,
        pnl_percentage=pnl.unrealized_pnl_percentage,
        token_a_price=pnl.token_a_price_usd,
        token_b_price=pnl.token_b_price_usd,
        pool_price=pnl.current_pool_price,
    )


__all__ = [
    "TIMEFRAMES",
    "TimeframeConfig",
    "build_closed_position_summaries",
    "calculate_aggregate_stats",
    "combine_with_closed",
    "create_position_snapshot",
    "format_bucket_label",
    "generate_aggregated_pnl_time_series",
    "is_valid_timeframe",
]
