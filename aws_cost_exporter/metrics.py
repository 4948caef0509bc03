"""
Declarative cost aggregations over the record store.

An aggregation definition is a YAML document::

    name: common
    where:
      - {column: cost, op: ">", value: 0}
    group_by:
      period: period
      product: product
    values:
      cost:
        column: cost
        function: sum
        help: Unblended cost

Every entry under ``values`` becomes one gauge named
``aws_cost_<name>_<value>`` with one sample per group, labeled by the
``group_by`` keys. Computation only reads the store and sorts its output, so
an unchanged store always yields the same samples.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import yaml

from .exceptions import QueryFailure
from .report_store import MEASURES, RECORD_SCHEMA, ReportStore
from .utils import PerformanceTimer, get_logger

METRIC_NAMESPACE = "aws_cost"

FUNCTIONS = ("sum", "mean", "min", "max", "count")

OPERATORS = {
    "==": lambda s, v: s == v,
    "!=": lambda s, v: s != v,
    ">": lambda s, v: s > v,
    ">=": lambda s, v: s >= v,
    "<": lambda s, v: s < v,
    "<=": lambda s, v: s <= v,
    "in": lambda s, v: s.isin(v),
}

_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

logger = get_logger("metrics")


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def apply(self, df: pd.DataFrame) -> pd.Series:
        return OPERATORS[self.op](df[self.column], self.value)


@dataclass(frozen=True)
class ValueSpec:
    name: str
    column: str
    function: str = "sum"
    help: str = ""


@dataclass
class AggregationDefinition:
    """One declarative aggregation: filters, label columns and measures."""

    name: str
    group_by: Dict[str, str]
    values: List[ValueSpec]
    where: List[Filter] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict, source: str = "<inline>") -> "AggregationDefinition":
        """Build and validate a definition.

        Raises:
            QueryFailure: If the definition is malformed
        """
        if not isinstance(data, dict):
            raise QueryFailure(f"Aggregation definition in {source} must be a mapping")

        known = set(RECORD_SCHEMA.names)

        name = data.get("name")
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise QueryFailure(f"Aggregation definition in {source} has invalid name: {name!r}")

        group_by = data.get("group_by") or {}
        if not isinstance(group_by, dict):
            raise QueryFailure(f"{name}: group_by must map label names to columns")
        for label, column in group_by.items():
            if not isinstance(label, str) or not _NAME_RE.match(label):
                raise QueryFailure(f"{name}: invalid label name {label!r}")
            if column not in known:
                raise QueryFailure(f"{name}: unknown group_by column {column!r}")

        raw_values = data.get("values")
        if not isinstance(raw_values, dict) or not raw_values:
            raise QueryFailure(f"{name}: at least one value is required")

        values = []
        for value_name, spec in raw_values.items():
            if not isinstance(value_name, str) or not _NAME_RE.match(value_name):
                raise QueryFailure(f"{name}: invalid value name {value_name!r}")
            if not isinstance(spec, dict):
                raise QueryFailure(f"{name}.{value_name}: value must be a mapping")
            column = spec.get("column")
            function = spec.get("function", "sum")
            if function not in FUNCTIONS:
                raise QueryFailure(f"{name}.{value_name}: unsupported function {function!r}")
            if column not in MEASURES and not (function == "count" and column in known):
                raise QueryFailure(f"{name}.{value_name}: unknown measure column {column!r}")
            values.append(ValueSpec(value_name, column, function, spec.get("help") or ""))

        where = []
        for raw in data.get("where") or []:
            if not isinstance(raw, dict):
                raise QueryFailure(f"{name}: where entries must be mappings")
            column, op = raw.get("column"), raw.get("op", "==")
            if column not in known:
                raise QueryFailure(f"{name}: unknown where column {column!r}")
            if op not in OPERATORS:
                raise QueryFailure(f"{name}: unsupported operator {op!r}")
            value = raw.get("value")
            if op == "in" and not isinstance(value, list):
                raise QueryFailure(f"{name}: 'in' requires a list value")
            where.append(Filter(column, op, value))

        return cls(name=name, group_by=dict(group_by), values=values, where=where)

    @property
    def columns(self) -> List[str]:
        needed = list(self.group_by.values())
        needed += [v.column for v in self.values]
        needed += [f.column for f in self.where]
        return list(dict.fromkeys(needed))

    def metric_name(self, value: ValueSpec) -> str:
        return f"{METRIC_NAMESPACE}_{self.name}_{value.name}"


@dataclass(frozen=True)
class MetricSnapshot:
    """A computed gauge: label names and (label values, value) samples."""

    name: str
    documentation: str
    label_names: Tuple[str, ...]
    samples: Tuple[Tuple[Tuple[str, ...], float], ...]


def load_definitions(queries_path) -> List[AggregationDefinition]:
    """Load every ``*.yaml``/``*.yml`` definition file, in file-name order.

    A file may hold one definition or a list of them.

    Raises:
        QueryFailure: On unreadable files, bad YAML, malformed or duplicate
            definitions
    """
    path = Path(queries_path)
    if not path.is_dir():
        raise QueryFailure(f"Queries directory not found: {path}")

    definitions = []
    files = sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml"))
    for file in files:
        try:
            with open(file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise QueryFailure(f"Failed to load aggregation definition {file}: {e}") from e

        docs = data if isinstance(data, list) else [data]
        definitions.extend(AggregationDefinition.from_dict(doc, str(file)) for doc in docs)

    names = [d.name for d in definitions]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise QueryFailure(f"Duplicate aggregation definitions: {', '.join(duplicates)}")

    logger.info("Loaded aggregation definitions", count=len(definitions), names=names)
    return definitions


def run_definition(definition: AggregationDefinition, records: pd.DataFrame) -> List[MetricSnapshot]:
    """Execute one definition against a records frame."""
    df = records
    for flt in definition.where:
        df = df[flt.apply(df)]

    labels = list(definition.group_by.keys())
    group_columns = [definition.group_by[label] for label in labels]

    snapshots = []
    for value in definition.values:
        if group_columns:
            grouped = df.groupby(group_columns, sort=True, dropna=False)[value.column].agg(value.function)
            rows = []
            for key, result in grouped.items():
                key = key if isinstance(key, tuple) else (key,)
                rows.append((tuple("" if pd.isna(k) else str(k) for k in key), float(result)))
        elif df.empty and value.function != "count":
            rows = []
        else:
            rows = [((), float(df[value.column].agg(value.function)))]

        rows.sort(key=lambda row: row[0])
        snapshots.append(
            MetricSnapshot(
                name=definition.metric_name(value),
                documentation=value.help or f"{value.function} of {value.column} by {', '.join(labels) or 'total'}",
                label_names=tuple(labels),
                samples=tuple(rows),
            )
        )
    return snapshots


class CostMetrics:
    """Run the configured aggregation definitions and keep the last published set."""

    def __init__(self, config: Optional[Dict] = None, definitions: Optional[List[AggregationDefinition]] = None):
        self.logger = get_logger("metrics")
        if definitions is None:
            definitions = load_definitions(config["storage"]["queries_path"])
        self.definitions = definitions
        self.snapshot: List[MetricSnapshot] = []

    def compute(self, store: ReportStore) -> List[MetricSnapshot]:
        """Compute all definitions; returns the snapshots without publishing them.

        Raises:
            QueryFailure: If any definition fails; nothing partial is returned
        """
        columns = sorted({c for d in self.definitions for c in d.columns}, key=RECORD_SCHEMA.names.index)

        with PerformanceTimer("Compute cost metrics", self.logger):
            try:
                records = store.read_records(columns=columns or None)
            except Exception as e:
                raise QueryFailure(f"Failed to read records: {e}") from e

            snapshots = []
            for definition in self.definitions:
                try:
                    snapshots.extend(run_definition(definition, records))
                except Exception as e:
                    self.logger.error("Aggregation failed", definition=definition.name, error=str(e))
                    raise QueryFailure(f"Aggregation {definition.name} failed: {e}") from e

        self.logger.info(
            "Computed cost metrics",
            rows=len(records),
            metrics=len(snapshots),
            samples=sum(len(s.samples) for s in snapshots),
        )
        return snapshots

    def publish(self, store: ReportStore) -> List[MetricSnapshot]:
        """Compute and, only on success, replace the published snapshot."""
        self.snapshot = self.compute(store)
        return self.snapshot
