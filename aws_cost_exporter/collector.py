"""Scrape-time collector exposing the computed cost gauges."""

from typing import Dict, Iterator

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from .config_loader import get_setting
from .exceptions import ExporterError
from .metrics import MetricSnapshot
from .orchestrator import SyncOrchestrator
from .utils import as_bool, get_logger

WATERMARK_METRIC = "aws_cost_exporter_report_last_modified_timestamp_seconds"


def to_gauge(snapshot: MetricSnapshot) -> GaugeMetricFamily:
    gauge = GaugeMetricFamily(snapshot.name, snapshot.documentation, labels=list(snapshot.label_names))
    for label_values, value in snapshot.samples:
        gauge.add_metric(list(label_values), value)
    return gauge


class CostCollector(Collector):
    """Runs a sync cycle on every collect() and yields the published gauges.

    A failed cycle fails the scrape, unless ``web.serve_stale_on_error`` is
    set, in which case the last published snapshot is served.
    """

    def __init__(self, config: Dict, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.logger = get_logger("collector")
        self.serve_stale = as_bool(get_setting(config, "web.serve_stale_on_error", False))

    def collect(self) -> Iterator[GaugeMetricFamily]:
        try:
            self.orchestrator.scrape()
        except ExporterError as e:
            self.logger.error("Sync cycle failed", error=str(e), error_type=type(e).__name__)
            if not self.serve_stale:
                raise
            self.logger.warning("Serving last published metrics")

        for snapshot in self.orchestrator.metrics.snapshot:
            yield to_gauge(snapshot)

        watermarks = GaugeMetricFamily(
            WATERMARK_METRIC,
            "Last modification time of the report manifest per billing period",
            labels=["period"],
        )
        for period, timestamp in sorted(self.orchestrator.state.last_modified.items()):
            watermarks.add_metric([period], timestamp.timestamp())
        yield watermarks
