"""Shared dashboard state and data access helpers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..analytics.portfolio import PortfolioTracker
from ..config.settings import AppConfig
from ..datalake.schemas import PositionPnLCalculation
from ..ingestion.positions import LivePositionSource
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..reconciliation.historical import HistoricalScanner
from .utils import to_serializable


class DashboardState:
    """Read-only view over the tracker, the ledger and the live position feed."""

    def __init__(
        self,
        *,
        config: AppConfig,
        tracker: PortfolioTracker,
        source: LivePositionSource,
        scanner: Optional[HistoricalScanner] = None,
        metrics: MetricsRegistry = METRICS,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.source = source
        self.scanner = scanner
        self.metrics = metrics
        self._logger = get_logger(__name__)

    @property
    def wallet(self) -> Optional[str]:
        return self.config.wallet.public_key

    def _pnls(self) -> List[PositionPnLCalculation]:
        if not self.wallet:
            return []
        return self.tracker.positions_pnl(self.source.list_positions(self.wallet))

    def positions(self) -> List[Dict[str, Any]]:
        return [to_serializable(pnl) for pnl in self._pnls()]

    def closed_positions(self) -> List[Dict[str, Any]]:
        return [to_serializable(item) for item in self.tracker.closed_positions()]

    def stats(self) -> Dict[str, Any]:
        return to_serializable(self.tracker.aggregated_stats(self._pnls()))

    def chart(self, timeframe: Optional[str] = None) -> List[Dict[str, Any]]:
        return to_serializable(self.tracker.chart_data(self._pnls(), timeframe))

    def scan_status(self) -> Dict[str, Any]:
        if self.scanner is None:
            return {"enabled": False}
        payload = to_serializable(self.scanner.status)
        payload["enabled"] = self.config.historical_scan.enabled
        return payload

    def storage_stats(self) -> Dict[str, int]:
        return self.tracker.ledger.storage_stats()

    def metrics_snapshot(self) -> Dict[str, object]:
        return self.metrics.snapshot()


__all__ = ["DashboardState"]
