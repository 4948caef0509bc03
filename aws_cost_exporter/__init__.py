"""
AWS Cost Exporter

Synchronizes AWS Cost and Usage Reports from S3 into a local Parquet store
and exposes declarative cost aggregations as Prometheus gauges.

Usage:
    from aws_cost_exporter import SyncOrchestrator, CostCollector

    orchestrator = SyncOrchestrator(config, state, state_store, source, store, metrics)
    orchestrator.start()
    registry.register(CostCollector(config, orchestrator))
"""

from .billing_period import BillingPeriod
from .collector import CostCollector
from .metrics import CostMetrics
from .orchestrator import SyncOrchestrator
from .report_store import ReportStore
from .s3_source import S3ReportSource
from .state import ExporterState, StateStore

__all__ = [
    'BillingPeriod',
    'CostCollector',
    'CostMetrics',
    'ExporterState',
    'ReportStore',
    'S3ReportSource',
    'StateStore',
    'SyncOrchestrator',
]

__version__ = '1.0.0'
