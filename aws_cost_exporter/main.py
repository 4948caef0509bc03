"""Main entry point for the AWS cost exporter."""

import argparse
import os
import sys
from wsgiref.simple_server import make_server

from prometheus_client import (
    CollectorRegistry,
    generate_latest,
    make_wsgi_app,
)
from prometheus_client.gc_collector import GCCollector
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from .collector import CostCollector
from .config_loader import get_config, get_setting
from .exceptions import CorruptState, ExporterError
from .metrics import CostMetrics
from .orchestrator import SyncOrchestrator
from .report_store import ReportStore
from .s3_source import S3ReportSource
from .state import ExporterState, StateStore
from .utils import as_bool, as_int, get_logger, setup_logging

LANDING_PAGE = """<html>
<head><title>AWS Cost Exporter</title></head>
<body>
<h1>AWS Cost Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


def load_state(config, state_store: StateStore, logger) -> ExporterState:
    """Load persisted state, optionally starting over when it is corrupt.

    Raises:
        CorruptState: If the state is unreadable and resetting is disabled
    """
    try:
        return state_store.load()
    except CorruptState as e:
        if not as_bool(get_setting(config, "storage.reset_state_on_corruption", False)):
            raise
        logger.warning("State file corrupt, starting with empty state (full re-sync)", error=str(e))
        return ExporterState()


def build_registry(config, orchestrator: SyncOrchestrator) -> CollectorRegistry:
    registry = CollectorRegistry()
    if not as_bool(get_setting(config, "web.disable_exporter_metrics", False)):
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        GCCollector(registry=registry)
    registry.register(CostCollector(config, orchestrator))
    return registry


def create_app(registry: CollectorRegistry, telemetry_path: str):
    """WSGI app serving the registry at ``telemetry_path`` and a landing page at ``/``."""
    metrics_app = make_wsgi_app(registry)
    landing = LANDING_PAGE.format(path=telemetry_path).encode("utf-8")

    def app(environ, start_response):
        path = environ.get("PATH_INFO") or "/"
        if path == telemetry_path:
            return metrics_app(environ, start_response)
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [landing]
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"Not Found\n"]

    return app


def apply_overrides(config, args):
    s3 = config.setdefault("s3", {})
    web = config.setdefault("web", {})
    if args.bucket:
        s3["bucket"] = args.bucket
    if args.report:
        s3["report_name"] = args.report
    if args.listen_address:
        web["listen_address"] = args.listen_address
    if args.port:
        web["port"] = args.port
    if args.log_level:
        config.setdefault("logging", {})["level"] = args.log_level
    return config


def run_exporter(args):
    """Load config and state, run the initial sync and serve metrics.

    Args:
        args: Command-line arguments

    Returns:
        Exit code
    """
    config = apply_overrides(get_config(args.config), args)

    setup_logging(
        level=get_setting(config, "logging.level", "INFO"),
        log_format=get_setting(config, "logging.format", "console"),
    )
    logger = get_logger("main")

    missing = [key for key in ("bucket", "report_name") if not config["s3"].get(key)]
    if missing:
        logger.error("Missing required S3 settings", missing=missing)
        return 1

    logger.info("Starting aws-cost-exporter", bucket=config["s3"]["bucket"], report=config["s3"]["report_name"])

    if hasattr(os, "geteuid") and os.geteuid() == 0:
        logger.warning(
            "AWS Cost Exporter is running as root user. This exporter is designed to run as "
            "unprivileged user, root is not required."
        )

    state_store = StateStore(config)
    try:
        state = load_state(config, state_store, logger)
    except CorruptState as e:
        logger.error("Unable to load exporter state", error=str(e))
        return 1

    try:
        metrics = CostMetrics(config)
    except ExporterError as e:
        logger.error("Unable to load aggregation definitions", error=str(e))
        return 1

    source = S3ReportSource(config)
    store = ReportStore(config)
    orchestrator = SyncOrchestrator(config, state, state_store, source, store, metrics)

    registry = build_registry(config, orchestrator)

    if args.once:
        try:
            output = generate_latest(registry)
        except ExporterError as e:
            logger.error("Sync failed", error=str(e), exc_info=True)
            return 1
        sys.stdout.write(output.decode("utf-8"))
        return 0

    try:
        orchestrator.start()
    except ExporterError as e:
        logger.error("Initial sync failed, retrying on next scrape", error=str(e))

    listen_address = get_setting(config, "web.listen_address", "0.0.0.0")
    port = as_int(get_setting(config, "web.port"), 9100)
    telemetry_path = get_setting(config, "web.telemetry_path", "/metrics")

    app = create_app(registry, telemetry_path)
    with make_server(listen_address, port, app) as server:
        logger.info("Listening", address=listen_address, port=port, path=telemetry_path)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Export AWS Cost and Usage Reports as Prometheus metrics")

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: config/config.yaml)",
    )
    parser.add_argument("--bucket", type=str, help="S3 bucket with the cost and usage report(s)")
    parser.add_argument("--report", type=str, help="Name of the cost and usage report in the bucket")
    parser.add_argument("--listen-address", type=str, help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--log-level", type=str, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync, print the metrics and exit",
    )

    args = parser.parse_args()
    sys.exit(run_exporter(args))


if __name__ == "__main__":
    main()
