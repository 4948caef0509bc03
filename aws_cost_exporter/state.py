"""Durable exporter state: known periods and per-period watermarks.

Persisted as::

    {"periods": ["20240101-20240201", ...],
     "lastModified": {"20240101-20240201": "2024-02-03T04:05:06+00:00"}}
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .billing_period import BillingPeriod
from .exceptions import CorruptState, MalformedPeriod, StorageFailure
from .utils import get_logger


@dataclass
class ExporterState:
    """Known periods plus the last observed manifest modification time per period.

    Owned by a single orchestrator; not safe for concurrent mutation.
    """

    periods: List[BillingPeriod] = field(default_factory=list)
    last_modified: Dict[str, datetime] = field(default_factory=dict)

    def watermark(self, period: BillingPeriod) -> Optional[datetime]:
        return self.last_modified.get(str(period))

    def advance(self, period: BillingPeriod, value: datetime):
        """Record a new watermark, never moving it backwards."""
        key = str(period)
        current = self.last_modified.get(key)
        if current is None or value > current:
            self.last_modified[key] = value

    def prune(self, periods: List[BillingPeriod]) -> List[str]:
        """Forget watermarks of periods outside ``periods``."""
        keep = {str(p) for p in periods}
        dropped = [key for key in self.last_modified if key not in keep]
        for key in dropped:
            del self.last_modified[key]
        return dropped

    def to_dict(self) -> Dict:
        return {
            "periods": [str(p) for p in self.periods],
            "lastModified": {k: v.isoformat() for k, v in sorted(self.last_modified.items())},
        }

    @classmethod
    def from_dict(cls, data) -> "ExporterState":
        if not isinstance(data, dict):
            raise CorruptState("State must be a JSON object")

        periods = data.get("periods") or []
        last_modified = data.get("lastModified") or {}
        if not isinstance(periods, list) or not isinstance(last_modified, dict):
            raise CorruptState("State has invalid periods or lastModified")

        try:
            state = cls(periods=sorted(BillingPeriod.parse(p) for p in periods))
            for key, value in last_modified.items():
                BillingPeriod.parse(key)
                timestamp = datetime.fromisoformat(value)
                if timestamp.tzinfo is None:
                    timestamp = timestamp.replace(tzinfo=timezone.utc)
                state.last_modified[key] = timestamp
        except (MalformedPeriod, TypeError, ValueError) as e:
            raise CorruptState(f"State contains invalid entries: {e}") from e

        return state


class StateStore:
    """Load and atomically save ExporterState as JSON."""

    def __init__(self, config: Dict):
        self.path = Path(config["storage"]["state_path"])
        self.logger = get_logger("state")

    def load(self) -> ExporterState:
        """Load persisted state; a missing file yields an empty state.

        Raises:
            CorruptState: If the file exists but cannot be read or parsed
        """
        if not self.path.exists():
            self.logger.info("No state file, starting with empty state", path=str(self.path))
            return ExporterState()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptState(f"Failed to read state file {self.path}: {e}") from e

        state = ExporterState.from_dict(data)
        self.logger.info(
            "Loaded state",
            path=str(self.path),
            periods=len(state.periods),
            watermarks=len(state.last_modified),
        )
        return state

    def save(self, state: ExporterState):
        """Write the full state via temp file + rename.

        Raises:
            StorageFailure: The state file could not be written; the previous
                file is left in place
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        except OSError as e:
            raise StorageFailure(f"Failed to write state {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            if isinstance(e, OSError):
                self.logger.error("Failed to save state", path=str(self.path), error=str(e))
                raise StorageFailure(f"Failed to write state {self.path}: {e}") from e
            raise

        self.logger.debug("Saved state", path=str(self.path), watermarks=len(state.last_modified))
