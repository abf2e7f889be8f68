"""Background snapshot recording and the one-off delayed historical scan."""

from __future__ import annotations

import asyncio
from typing import Optional

from ..config.settings import get_app_config
from ..datalake.schemas import ScanStatus
from ..ingestion.positions import LivePositionSource
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..reconciliation.backfill import AutoBackfill
from ..reconciliation.historical import HistoricalScanner
from .portfolio import PortfolioTracker


class SnapshotRecorder:
    """Records a snapshot of every tracked position on a fixed interval.

    ``start`` launches the snapshot loop (first pass immediately) and, when a
    scanner is supplied, a historical scan after ``scan_delay_seconds``. Both
    tasks are cancelled by ``stop``; a scan that finishes after ``stop`` is
    discarded.
    """

    def __init__(
        self,
        tracker: PortfolioTracker,
        source: LivePositionSource,
        wallet: str,
        *,
        backfill: Optional[AutoBackfill] = None,
        scanner: Optional[HistoricalScanner] = None,
        interval_seconds: Optional[float] = None,
        scan_delay_seconds: Optional[float] = None,
    ) -> None:
        config = get_app_config()
        self._tracker = tracker
        self._source = source
        self._wallet = wallet
        self._backfill = backfill
        self._scanner = scanner
        self._interval = (
            interval_seconds if interval_seconds is not None else config.pnl.snapshot_interval_seconds
        )
        self._scan_delay = (
            scan_delay_seconds
            if scan_delay_seconds is not None
            else config.historical_scan.start_delay_seconds
        )
        self._loop_task: Optional[asyncio.Task] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._cycles = 0
        self._last_scan: Optional[ScanStatus] = None
        self._logger = get_logger(__name__)

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def last_scan(self) -> Optional[ScanStatus]:
        return self._last_scan

    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def record_once(self) -> int:
        positions = self._source.list_positions(self._wallet)
        if self._backfill is not None:
            self._backfill.run(positions)
        pnls = self._tracker.positions_pnl(positions)
        written = self._tracker.record_snapshots(pnls)
        self._logger.info("Recorded %d snapshots for %d positions", written, len(pnls))
        return written

    async def start(self, *, max_cycles: Optional[int] = None) -> None:
        if self.is_running():
            return
        self._generation += 1
        self._loop_task = asyncio.create_task(self._run_loop(max_cycles))
        if self._scanner is not None:
            self._scan_task = asyncio.create_task(self._delayed_scan(self._generation))

    async def wait(self) -> None:
        for task in (self._loop_task, self._scan_task):
            if task is not None:
                await task

    async def stop(self) -> None:
        self._generation += 1
        for task in (self._loop_task, self._scan_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._scan_task = None

    async def _run_loop(self, max_cycles: Optional[int]) -> None:
        while True:
            self._cycles += 1
            try:
                await asyncio.to_thread(self.record_once)
            except Exception as exc:  # noqa: BLE001
                METRICS.increment("recorder.failures")
                self._logger.exception(
                    "Snapshot cycle %d failed: %s", self._cycles, exc, extra={"cycle": self._cycles}
                )
            if max_cycles is not None and self._cycles >= max_cycles:
                break
            await asyncio.sleep(max(self._interval, 0.0))

    async def _delayed_scan(self, generation: int) -> None:
        await asyncio.sleep(max(self._scan_delay, 0.0))
        status = await asyncio.to_thread(self._scanner.scan, self._wallet)
        if generation != self._generation:
            self._logger.debug("Discarding historical scan result after shutdown")
            return
        self._last_scan = status


__all__ = ["SnapshotRecorder"]
