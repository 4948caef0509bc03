"""
Sync orchestrator: keeps the local store and metrics in step with S3.

Per scrape::

    Idle -> periods stale? -> refresh periods
         -> check newest manifest -> unchanged: done
                                  -> changed: ingest -> save state -> recompute

State is saved right after a successful ingest and before recomputation,
so a crash while computing never repeats a finished download.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .billing_period import BillingPeriod
from .config_loader import get_setting
from .manifest import fetch_manifest_if_changed
from .metrics import CostMetrics
from .period_resolver import PeriodResolver
from .report_ingestor import ReportIngestor
from .report_store import ReportStore
from .state import ExporterState, StateStore
from .utils import as_int, get_logger, utcnow


class SyncOrchestrator:
    """Single owner of ExporterState, the record store and the published metrics."""

    def __init__(
        self,
        config: Dict,
        state: ExporterState,
        state_store: StateStore,
        source,
        store: ReportStore,
        metrics: CostMetrics,
        resolver: Optional[PeriodResolver] = None,
        ingestor: Optional[ReportIngestor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.state = state
        self.state_store = state_store
        self.source = source
        self.store = store
        self.metrics = metrics
        self.resolver = resolver or PeriodResolver(config, source)
        self.ingestor = ingestor or ReportIngestor(config, source, store)
        self.clock = clock
        self.logger = get_logger("orchestrator")
        self.past_due_grace = timedelta(
            hours=as_int(get_setting(config, "periods.past_due_grace_hours"), 0)
        )
        self._lock = threading.Lock()
        self.synced = False

    @property
    def periods(self) -> List[BillingPeriod]:
        return self.state.periods

    def start(self):
        """Initial sync: resolve periods, fetch what is missing, publish metrics.

        Older periods are fetched only when never seen before; the newest is
        always checked since it may still be receiving corrections.
        """
        with self._lock:
            self._initial_sync()

    def _initial_sync(self):
        self.logger.info("Starting initial sync")
        self._refresh_periods()

        for idx, period in enumerate(self.state.periods):
            is_last = idx == len(self.state.periods) - 1
            if is_last or self._needs_fetch(period):
                self._update_report(period)
            else:
                self.logger.debug("Period already synced", period=str(period))

        self.state_store.save(self.state)
        self.metrics.publish(self.store)
        self.synced = True
        self.logger.info("Initial sync complete", periods=[str(p) for p in self.state.periods])

    def scrape(self) -> bool:
        """Run one scrape-triggered sync cycle.

        Until an initial sync has succeeded, the scrape runs it instead.

        Returns:
            True if data changed and metrics were recomputed

        Raises:
            ExporterError: Any failure of the cycle; prior state is kept
        """
        with self._lock:
            if not self.synced:
                self._initial_sync()
                return True

            changed = False

            newest = self.state.periods[-1] if self.state.periods else None
            if newest is None or newest.is_past_due(self.clock(), self.past_due_grace):
                self.logger.info(
                    "Billing periods stale, refreshing",
                    newest=str(newest) if newest else None,
                )
                changed = self._refresh_periods()

            if not self.state.periods:
                self.logger.warning("No billing periods available")
                if changed:
                    self.metrics.publish(self.store)
                return changed

            if self._update_report(self.state.periods[-1]):
                changed = True

            if changed:
                self.metrics.publish(self.store)
                self.logger.info("Metrics recomputed")
            else:
                self.logger.debug("Reports unchanged")

            return changed

    def update_report(self, period: BillingPeriod) -> bool:
        """Check one period and ingest its report if the manifest changed."""
        with self._lock:
            return self._update_report(period)

    def _needs_fetch(self, period: BillingPeriod) -> bool:
        return self.state.watermark(period) is None or self.store.assembly_id(str(period)) is None

    def _update_report(self, period: BillingPeriod) -> bool:
        watermark = self.state.watermark(period)
        if watermark is not None and self.store.assembly_id(str(period)) is None:
            self.logger.warning("Watermark recorded but no readable local records, refetching", period=str(period))
            watermark = None

        self.logger.debug(
            "Attempt to download new report manifest",
            period=str(period),
            last_modified=watermark.isoformat() if watermark else None,
        )

        manifest, new_watermark = fetch_manifest_if_changed(self.source, period, watermark)
        if manifest is None:
            self.logger.debug("Report manifest didn't change", period=str(period))
            return False

        self.ingestor.ingest(manifest, period)

        self.state.advance(period, new_watermark)
        self.state_store.save(self.state)
        return True

    def _refresh_periods(self) -> bool:
        """Re-resolve periods and drop data outside the window.

        On failure the previous period list is kept and the error raised.

        Returns:
            True if stored data was dropped
        """
        periods = self.resolver.resolve()
        previous = self.state.periods
        self.state.periods = periods

        retained = [str(p) for p in periods]
        dropped_records = self.store.retain(retained)
        dropped_watermarks = self.state.prune(periods)

        if periods != previous or dropped_watermarks:
            self.state_store.save(self.state)

        if dropped_records or dropped_watermarks:
            self.logger.info(
                "Dropped periods outside retention window",
                records=dropped_records,
                watermarks=dropped_watermarks,
            )
        return bool(dropped_records)
