"""Synthesize entry records for open positions that have none in the ledger."""

from __future__ import annotations

import time
from typing import Callable, Optional, Sequence

from ..analytics.pnl import token_amount_to_decimal
from ..config.settings import BackfillConfig, get_app_config
from ..datalake.schemas import BackfillStatus, LivePosition, PositionEntryRecord, Provenance
from ..datalake.storage import PositionLedger
from ..ingestion.pricing import PriceOracle
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import AUTO_BACKFILL_SIGNATURE, MS_PER_DAY, now_ms
from ..utils.errors import LedgerValidationError
from ..utils.validators import safe_divide


class AutoBackfill:
    """Writes estimated entries for live positions missing from the ledger.

    Entry data is a heuristic: the position is assumed to have been opened
    ``assumed_age_days`` ago at prices ``entry_discount_pct`` below today's.
    """

    def __init__(
        self,
        ledger: PositionLedger,
        oracle: PriceOracle,
        *,
        config: Optional[BackfillConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ledger = ledger
        self._oracle = oracle
        self._config = config or get_app_config().backfill
        self._sleep = sleep
        self._clock = clock
        self._status = BackfillStatus()
        self._logger = get_logger(__name__)

    @property
    def status(self) -> BackfillStatus:
        return self._status

    def should_run(self, position_count: int) -> bool:
        if self._status.in_progress or position_count == 0:
            return False
        if self._status.completed and position_count <= self._status.last_position_count:
            return False
        return True

    def run(self, positions: Sequence[LivePosition]) -> BackfillStatus:
        if not self._config.enabled or not self.should_run(len(positions)):
            return self._status

        self._status.in_progress = True
        created = skipped = failed = 0
        try:
            entries = self._ledger.get_all_entries()
            for index, position in enumerate(positions):
                if position.position_address in entries:
                    skipped += 1
                    continue
                if index > 0:
                    self._sleep(self._config.inter_position_delay_seconds)
                try:
                    result = self._ledger.save_entry(self._estimate_entry(position))
                except (LedgerValidationError, ValueError) as exc:
                    failed += 1
                    self._logger.warning(
                        "Backfill skipped %s: %s", position.position_address, exc
                    )
                    continue
                if result.written:
                    created += 1
                else:
                    skipped += 1
        finally:
            self._status.in_progress = False

        self._status.completed = True
        self._status.last_position_count = len(positions)
        self._status.created += created
        self._status.skipped += skipped
        self._status.failed += failed
        METRICS.increment("backfill.entries_created", created)
        self._logger.info(
            "Auto-backfill finished: %d created, %d skipped, %d failed", created, skipped, failed
        )
        return self._status

    def _estimate_entry(self, position: LivePosition) -> PositionEntryRecord:
        decimals_a = position.token_a_decimals
        if decimals_a is None:
            decimals_a = self._config.default_token_decimals
        decimals_b = position.token_b_decimals
        if decimals_b is None:
            decimals_b = self._config.default_token_decimals

        price_a = self._oracle.get_price_usd(position.token_a_mint)
        price_b = self._oracle.get_price_usd(position.token_b_mint)
        current_value = (
            token_amount_to_decimal(position.token_a_amount, decimals_a) * price_a
            + token_amount_to_decimal(position.token_b_amount, decimals_b) * price_b
        )
        factor = 1 - self._config.entry_discount_pct / 100
        age_ms = int(self._config.assumed_age_days * MS_PER_DAY)

        return PositionEntryRecord(
            position_address=position.position_address,
            pool_address=position.pool_address,
            entry_timestamp=self._clock() - age_ms,
            token_a_mint=position.token_a_mint,
            token_b_mint=position.token_b_mint,
            initial_token_a_amount=position.token_a_amount,
            initial_token_b_amount=position.token_b_amount,
            entry_token_a_price_usd=price_a * factor,
            entry_token_b_price_usd=price_b * factor,
            entry_pool_price=safe_divide(price_b, price_a) * factor,
            initial_value_usd=current_value * factor,
            token_a_decimals=decimals_a,
            token_b_decimals=decimals_b,
            tx_signature=AUTO_BACKFILL_SIGNATURE,
            provenance=Provenance.ESTIMATED,
        )


__all__ = ["AutoBackfill"]
