"""
Report ingestion: CUR CSV parts to normalized records.

Each part is streamed from S3, decompressed on the fly, and parsed in
chunks. Columns are resolved from the header row by name, so reordered or
extended CUR schemas load correctly and a missing column is reported
instead of silently reading the wrong field.

All parts of one manifest are written through a single
ReportStore.replace_period call, making the whole report one atomic unit.
"""

import csv
import gzip
import io
import zlib
from typing import Dict, Iterator, List

import numpy as np
import pandas as pd
from botocore.exceptions import BotoCoreError

from .billing_period import BillingPeriod
from .config_loader import get_setting
from .exceptions import MalformedRecord, MissingColumn, TransferFailure
from .manifest import ReportManifest
from .report_store import DIMENSIONS, MEASURES, ReportStore
from .utils import PerformanceTimer, as_int, get_logger, log_memory_usage

# Record column -> CUR header column
COLUMN_MAP = {
    "product": "product/ProductName",
    "operation": "lineItem/Operation",
    "item_type": "lineItem/LineItemType",
    "usage_type": "lineItem/UsageType",
    "usage_unit": "pricing/unit",
    "currency": "lineItem/CurrencyCode",
    "account": "lineItem/UsageAccountId",
    "usage_amount": "lineItem/UsageAmount",
    "cost": "lineItem/UnblendedCost",
}

DEFAULT_CHUNK_SIZE = 50000


def resolve_columns(header: List[str], key: str = None) -> Dict[str, int]:
    """Map each record column to its index in ``header``.

    The first occurrence wins when a header repeats a name.

    Raises:
        MissingColumn: If any required column is absent
    """
    positions = {}
    for idx, name in enumerate(header):
        positions.setdefault(name.strip(), idx)

    missing = [source for source in COLUMN_MAP.values() if source not in positions]
    if missing:
        raise MissingColumn(missing, key=key)

    return {column: positions[source] for column, source in COLUMN_MAP.items()}


def _to_measure(values: pd.Series, column: str, key: str) -> pd.Series:
    values = values.fillna("").astype(str).str.strip().replace("", "0")
    try:
        return pd.to_numeric(values, errors="raise").astype(np.float64)
    except (ValueError, TypeError) as e:
        raise MalformedRecord(f"Non-numeric {column} value in {key}: {e}") from e


class ReportIngestor:
    """Download report parts and load them into the ReportStore."""

    def __init__(self, config: Dict, source, store: ReportStore):
        self.source = source
        self.store = store
        self.logger = get_logger("report_ingestor")
        self.chunk_size = as_int(get_setting(config, "ingest.chunk_size"), DEFAULT_CHUNK_SIZE)

    def ingest(self, manifest: ReportManifest, period: BillingPeriod) -> bool:
        """Replace the period's records with the manifest's report.

        Returns:
            True if records were loaded, False if this assembly was already
            fully ingested

        Raises:
            MissingColumn, MalformedRecord, TransferFailure: The store is
                left unchanged for the period
        """
        period_key = str(period)

        if self.store.has_assembly(period_key, manifest.assembly_id):
            self.logger.warning(
                "Report already ingested, skipping download",
                period=period_key,
                assembly_id=manifest.assembly_id,
            )
            return False

        self.logger.info(
            "Fetching report",
            period=period_key,
            assembly_id=manifest.assembly_id,
            parts=len(manifest.report_keys),
        )

        with PerformanceTimer(f"Ingest report {period_key}", self.logger):
            rows = self.store.replace_period(
                period_key, manifest.assembly_id, self._iter_records(manifest, period_key)
            )

        self.logger.info("Report ingested", period=period_key, assembly_id=manifest.assembly_id, rows=rows)
        log_memory_usage(self.logger, "after ingest")
        return True

    def _iter_records(self, manifest: ReportManifest, period: str) -> Iterator[pd.DataFrame]:
        for part, key in enumerate(manifest.report_keys):
            self.logger.info("Fetching report part", period=period, part=part, key=key)
            obj = self.source.open_object(manifest.bucket, key)
            self.logger.debug("Report part opened", key=key, content_length=obj.content_length)
            try:
                yield from self._read_part(obj.body, key, period, manifest.is_compressed)
            except (gzip.BadGzipFile, zlib.error) as e:
                raise MalformedRecord(f"Report part {key} is not valid gzip: {e}") from e
            except (BotoCoreError, OSError, EOFError) as e:
                raise TransferFailure(f"Failed to read report part {key}: {e}") from e
            finally:
                obj.close()

    def _read_part(self, body, key: str, period: str, compressed: bool) -> Iterator[pd.DataFrame]:
        raw = gzip.GzipFile(fileobj=body, mode="rb") if compressed else body
        text = io.TextIOWrapper(raw, encoding="utf-8", newline="")

        try:
            line = text.readline()
            if not line:
                raise MalformedRecord(f"Report part {key} is empty")
            header = next(csv.reader([line]))
        except (csv.Error, UnicodeDecodeError) as e:
            raise MalformedRecord(f"Unreadable header in {key}: {e}") from e

        indices = resolve_columns(header, key)
        by_index = {idx: column for column, idx in indices.items()}

        try:
            reader = pd.read_csv(
                text,
                header=None,
                usecols=sorted(by_index),
                dtype=str,
                keep_default_na=False,
                chunksize=self.chunk_size,
            )
        except pd.errors.EmptyDataError:
            self.logger.info("Report part has no rows", key=key)
            return
        except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
            raise MalformedRecord(f"Unparsable rows in {key}: {e}") from e

        with reader:
            try:
                for chunk in reader:
                    yield self._normalize(chunk.rename(columns=by_index), key, period)
            except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
                raise MalformedRecord(f"Unparsable rows in {key}: {e}") from e

    def _normalize(self, chunk: pd.DataFrame, key: str, period: str) -> pd.DataFrame:
        records = pd.DataFrame(index=chunk.index)
        records["period"] = period
        for column in DIMENSIONS:
            records[column] = chunk[column].fillna("").astype(str)
        for column in MEASURES:
            records[column] = _to_measure(chunk[column], column, key)
        return records.reset_index(drop=True)
