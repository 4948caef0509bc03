"""
Local columnar store for normalized CUR records.

Layout::

    <repository>/data/<period>/records.parquet

Each period is one Parquet file whose schema metadata carries the assembly
id of the report it was built from. Replacing a period streams all record
chunks into a temporary file in the same directory and renames it over the
old file only once every chunk was written, so a reader sees either the old
records or the new ones and never a mix.
"""

import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .exceptions import StorageFailure
from .utils import PerformanceTimer, format_bytes, get_logger

RECORDS_FILE = "records.parquet"
ASSEMBLY_KEY = b"assembly_id"

DIMENSIONS = [
    "product",
    "operation",
    "item_type",
    "usage_type",
    "usage_unit",
    "currency",
    "account",
]
MEASURES = ["usage_amount", "cost"]

RECORD_SCHEMA = pa.schema(
    [pa.field("period", pa.string())]
    + [pa.field(name, pa.string()) for name in DIMENSIONS]
    + [pa.field(name, pa.float64()) for name in MEASURES]
)


class ReportStore:
    """Per-period Parquet repository with atomic replacement."""

    def __init__(self, config: Dict):
        self.logger = get_logger("report_store")
        self.repository_path = Path(config["storage"]["repository_path"])
        self.data_path = self.repository_path / "data"

    def _records_path(self, period: str) -> Path:
        return self.data_path / period / RECORDS_FILE

    def periods(self) -> List[str]:
        """Canonical period strings that currently hold records."""
        return sorted(p.parent.name for p in self.data_path.glob(f"*/{RECORDS_FILE}"))

    def assembly_id(self, period: str) -> Optional[str]:
        """Assembly id of the report currently stored for ``period``."""
        path = self._records_path(period)
        if not path.exists():
            return None
        try:
            metadata = pq.read_schema(str(path)).metadata or {}
        except (pa.ArrowException, OSError) as e:
            # Unreadable records count as missing and get fetched again
            self.logger.warning("Unreadable period records", period=period, error=str(e))
            return None
        value = metadata.get(ASSEMBLY_KEY)
        return value.decode("utf-8") if value is not None else None

    def has_assembly(self, period: str, assembly_id: str) -> bool:
        return bool(assembly_id) and self.assembly_id(period) == assembly_id

    def row_count(self, period: str) -> int:
        path = self._records_path(period)
        if not path.exists():
            return 0
        try:
            return pq.ParquetFile(str(path)).metadata.num_rows
        except (pa.ArrowException, OSError) as e:
            raise StorageFailure(f"Failed to read records for {period}: {e}") from e

    def replace_period(self, period: str, assembly_id: str, chunks: Iterable[pd.DataFrame]) -> int:
        """Replace all records for ``period`` with the given chunks.

        Either every chunk lands and becomes visible at once, or the stored
        records for the period are left exactly as they were.

        Args:
            period: Canonical period string
            assembly_id: Report assembly id recorded as the completion marker
            chunks: Record frames with the RECORD_SCHEMA columns

        Returns:
            Number of rows written
        """
        target = self._records_path(period)
        tmp_path = target.with_name(f".{RECORDS_FILE}.{uuid.uuid4().hex}.tmp")

        schema = RECORD_SCHEMA.with_metadata({ASSEMBLY_KEY: assembly_id.encode("utf-8")})
        rows = 0

        with PerformanceTimer(f"Write records for {period}", self.logger):
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with pq.ParquetWriter(str(tmp_path), schema) as writer:
                    for chunk in chunks:
                        if chunk.empty:
                            continue
                        table = pa.Table.from_pandas(chunk[schema.names], schema=schema, preserve_index=False)
                        writer.write_table(table)
                        rows += len(chunk)
                    if rows == 0:
                        writer.write_table(schema.empty_table())

                with open(tmp_path, "rb") as f:
                    os.fsync(f.fileno())
                os.replace(tmp_path, target)
            except BaseException as e:
                if tmp_path.exists():
                    tmp_path.unlink()
                if isinstance(e, (pa.ArrowException, OSError)):
                    self.logger.error("Failed to write period records", period=period, error=str(e))
                    raise StorageFailure(f"Failed to write records for {period}: {e}") from e
                raise

        self.logger.info(
            "Replaced period records",
            period=period,
            assembly_id=assembly_id,
            rows=rows,
            size=format_bytes(target.stat().st_size),
        )
        return rows

    def remove_period(self, period: str):
        path = self.data_path / period
        if path.exists():
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise StorageFailure(f"Failed to remove records for {period}: {e}") from e
            self.logger.info("Removed period records", period=period)

    def retain(self, periods: Iterable[str]) -> List[str]:
        """Drop stored periods outside ``periods``.

        Returns:
            The periods that were removed
        """
        keep = set(periods)
        removed = [p for p in self.periods() if p not in keep]
        for period in removed:
            self.remove_period(period)
        return removed

    def read_records(self, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """Read the records of all stored periods, ordered by period."""
        frames = []
        for period in self.periods():
            try:
                table = pq.read_table(str(self._records_path(period)), columns=columns)
            except (pa.ArrowException, OSError) as e:
                raise StorageFailure(f"Failed to read records for {period}: {e}") from e
            frames.append(table.to_pandas())

        if not frames:
            names = columns or RECORD_SCHEMA.names
            return RECORD_SCHEMA.empty_table().select(names).to_pandas()

        return pd.concat(frames, ignore_index=True)
