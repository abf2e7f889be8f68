"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .logger import configure_logging
from .metrics import METRICS


def bootstrap_observability(config: Optional[AppConfig] = None) -> None:
    """Install structured logging and publish static process gauges."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    METRICS.gauge("process.snapshot_interval_seconds", app_config.pnl.snapshot_interval_seconds)
    METRICS.gauge("process.historical_scan_enabled", 1.0 if app_config.historical_scan.enabled else 0.0)


__all__ = ["bootstrap_observability", "METRICS"]
