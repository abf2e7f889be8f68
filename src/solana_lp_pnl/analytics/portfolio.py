"""Wallet-level orchestration of ledger, oracle, P&L and aggregation."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..config.settings import PnLConfig, get_app_config
from ..datalake.schemas import (
    AggregateStats,
    AggregatedPnLDataPoint,
    ClosedPositionSummary,
    LivePosition,
    PositionEntryRecord,
    PositionExitRecord,
    PositionPnLCalculation,
    Provenance,
    TokenMeta,
    WriteResult,
)
from ..datalake.storage import PositionLedger
from ..ingestion.pricing import PriceOracle
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import now_ms
from ..utils.errors import LedgerValidationError
from ..utils.validators import safe_divide
from .aggregator import (
    build_closed_position_summaries,
    calculate_aggregate_stats,
    combine_with_closed,
    create_position_snapshot,
    generate_aggregated_pnl_time_series,
)
from .pnl import calculate_position_pnl, token_amount_to_decimal


class PortfolioTracker:
    """Computes and records P&L for the live positions of one wallet.

    Live positions without a ledger entry are left out of every P&L figure;
    run the auto-backfill first to give them an estimated one.
    """

    def __init__(
        self,
        ledger: PositionLedger,
        oracle: PriceOracle,
        *,
        config: Optional[PnLConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ledger = ledger
        self._oracle = oracle
        self._config = config or get_app_config().pnl
        self._clock = clock
        self._logger = get_logger(__name__)

    @property
    def ledger(self) -> PositionLedger:
        return self._ledger

    def positions_pnl(self, positions: Sequence[LivePosition]) -> List[PositionPnLCalculation]:
        if not positions:
            return []
        entries = self._ledger.get_all_entries()
        mints = {mint for position in positions for mint in (position.token_a_mint, position.token_b_mint)}
        prices = self._oracle.get_batch_prices_usd(mints)
        now = self._clock()

        results: List[PositionPnLCalculation] = []
        for position in positions:
            entry = entries.get(position.position_address)
            if entry is None:
                self._logger.debug("No entry for %s; excluded from P&L", position.position_address)
                continue
            token_a = TokenMeta(
                mint=position.token_a_mint,
                decimals=entry.token_a_decimals,
                price_usd=prices.get(position.token_a_mint, 0.0),
            )
            token_b = TokenMeta(
                mint=position.token_b_mint,
                decimals=entry.token_b_decimals,
                price_usd=prices.get(position.token_b_mint, 0.0),
            )
            try:
                pnl = calculate_position_pnl(
                    position,
                    entry,
                    token_a,
                    token_b,
                    claimed_fees_usd=self._ledger.get_total_claimed_fees_value(position.position_address),
                    now=now,
                )
            except ValueError as exc:
                self._logger.warning("P&L failed for %s: %s", position.position_address, exc)
                METRICS.increment("pnl.calculation_errors")
                continue
            results.append(pnl)

        METRICS.gauge("pnl.open_positions", len(results))
        METRICS.gauge("pnl.unrealized_usd", sum(item.unrealized_pnl_with_fees_usd for item in results))
        return results

    def closed_positions(self) -> List[ClosedPositionSummary]:
        return build_closed_position_summaries(self._ledger.get_all_entries(), self._ledger.get_all_exits())

    def aggregated_stats(self, pnls: Sequence[PositionPnLCalculation]) -> AggregateStats:
        stats = combine_with_closed(calculate_aggregate_stats(pnls), self.closed_positions())
        METRICS.gauge("pnl.total_profit_usd", stats.total_profit)
        METRICS.gauge("pnl.net_worth_usd", stats.total_net_worth)
        return stats

    def chart_data(
        self, pnls: Sequence[PositionPnLCalculation], timeframe: Optional[str] = None
    ) -> List[AggregatedPnLDataPoint]:
        return generate_aggregated_pnl_time_series(
            pnls,
            timeframe or self._config.default_timeframe,
            self._ledger.get_all_snapshots(),
            self.closed_positions(),
            now=self._clock(),
            gap_fill=self._config.gap_fill_mode,
            live_window_ms=self._config.live_bucket_window_seconds * 1000,
        )

    def record_snapshots(self, pnls: Sequence[PositionPnLCalculation]) -> int:
        """Append one snapshot per tracked position; returns how many were written."""

        now = self._clock()
        written = 0
        for pnl in pnls:
            if pnl.current_value_usd < self._config.min_position_value_usd_tracking:
                self._logger.debug("Position %s below tracking threshold", pnl.position_address)
                continue
            result = self._ledger.save_snapshot(pnl.position_address, create_position_snapshot(pnl, now))
            if result.written:
                written += 1
        METRICS.increment("pnl.snapshots_recorded", written)
        return written

    def _prices_for(self, position: LivePosition) -> Dict[str, float]:
        return self._oracle.get_batch_prices_usd([position.token_a_mint, position.token_b_mint])

    @staticmethod
    def _decimals(position: LivePosition) -> Tuple[int, int]:
        if position.token_a_decimals is None or position.token_b_decimals is None:
            raise LedgerValidationError(f"Token decimals are required to record {position.position_address}")
        return position.token_a_decimals, position.token_b_decimals

    def record_position_open(
        self, position: LivePosition, *, tx_signature: Optional[str] = None
    ) -> WriteResult:
        decimals_a, decimals_b = self._decimals(position)
        prices = self._prices_for(position)
        price_a = prices.get(position.token_a_mint, 0.0)
        price_b = prices.get(position.token_b_mint, 0.0)
        value = (
            token_amount_to_decimal(position.token_a_amount, decimals_a) * price_a
            + token_amount_to_decimal(position.token_b_amount, decimals_b) * price_b
        )
        entry = PositionEntryRecord(
            position_address=position.position_address,
            pool_address=position.pool_address,
            entry_timestamp=self._clock(),
            token_a_mint=position.token_a_mint,
            token_b_mint=position.token_b_mint,
            initial_token_a_amount=position.token_a_amount,
            initial_token_b_amount=position.token_b_amount,
            entry_token_a_price_usd=price_a,
            entry_token_b_price_usd=price_b,
            entry_pool_price=safe_divide(price_b, price_a),
            initial_value_usd=value,
            token_a_decimals=decimals_a,
            token_b_decimals=decimals_b,
            tx_signature=tx_signature,
            provenance=Provenance.MEASURED,
        )
        result = self._ledger.save_entry(entry)
        self._logger.info("Recorded open of %s worth %.2f USD", position.position_address, value)
        return result

    def record_position_close(
        self, position: LivePosition, *, tx_signature: Optional[str] = None
    ) -> WriteResult:
        """Write the exit of ``position`` from its final live state.

        Realized P&L is measured against the stored entry; unclaimed fees at
        close are reported separately as collected fees.
        """

        entry = self._ledger.get_entry(position.position_address)
        if entry is None:
            raise LedgerValidationError(f"No entry recorded for {position.position_address}")
        decimals_a, decimals_b = entry.token_a_decimals, entry.token_b_decimals
        prices = self._prices_for(position)
        price_a = prices.get(position.token_a_mint, 0.0)
        price_b = prices.get(position.token_b_mint, 0.0)

        final_value = (
            token_amount_to_decimal(position.token_a_amount, decimals_a) * price_a
            + token_amount_to_decimal(position.token_b_amount, decimals_b) * price_b
        )
        fees_value = (
            token_amount_to_decimal(position.unclaimed_fee_a, decimals_a) * price_a
            + token_amount_to_decimal(position.unclaimed_fee_b, decimals_b) * price_b
        )
        realized = final_value - entry.initial_value_usd
        exit_record = PositionExitRecord(
            position_address=position.position_address,
            pool_address=position.pool_address,
            exit_timestamp=self._clock(),
            final_token_a_amount=position.token_a_amount,
            final_token_b_amount=position.token_b_amount,
            exit_token_a_price_usd=price_a,
            exit_token_b_price_usd=price_b,
            exit_pool_price=safe_divide(price_b, price_a),
            final_value_usd=final_value,
            total_fees_collected_a=position.unclaimed_fee_a,
            total_fees_collected_b=position.unclaimed_fee_b,
            total_fees_collected_usd=fees_value,
            realized_pnl_usd=realized,
            realized_pnl_percentage=safe_divide(realized * 100, entry.initial_value_usd),
            tx_signature=tx_signature,
            provenance=Provenance.MEASURED,
        )
        result = self._ledger.save_exit(exit_record)
        self._logger.info(
            "Recorded close of %s: realized %.2f USD, fees %.2f USD",
            position.position_address,
            realized,
            fees_value,
        )
        return result

    def record_claimed_fees(self, position: LivePosition) -> WriteResult:
        entry = self._ledger.get_entry(position.position_address)
        if entry is not None:
            decimals_a, decimals_b = entry.token_a_decimals, entry.token_b_decimals
        else:
            decimals_a, decimals_b = self._decimals(position)
        prices = self._prices_for(position)
        value = (
            token_amount_to_decimal(position.unclaimed_fee_a, decimals_a)
            * prices.get(position.token_a_mint, 0.0)
            + token_amount_to_decimal(position.unclaimed_fee_b, decimals_b)
            * prices.get(position.token_b_mint, 0.0)
        )
        return self._ledger.record_claimed_fees(
            position.position_address,
            position.unclaimed_fee_a,
            position.unclaimed_fee_b,
            value,
            timestamp=self._clock(),
        )


__all__ = ["PortfolioTracker"]
