"""Billing period value type.

CUR exports are laid out as one prefix per billing period, named after the
period's first day and the first day of the next period, e.g.
``20240101-20240201``. The dashed form ``2024-01-01-2024-02-01`` is accepted
as well. A parsed period remembers which form it came from so its canonical
string is exactly the string it was parsed from.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import total_ordering
from typing import Optional

from .exceptions import MalformedPeriod

COMPACT_FORMAT = "%Y%m%d"
DASHED_FORMAT = "%Y-%m-%d"

_PATTERNS = (
    (re.compile(r"([0-9]{8})-([0-9]{8})"), COMPACT_FORMAT),
    (re.compile(r"([0-9]{4}-[0-9]{2}-[0-9]{2})-([0-9]{4}-[0-9]{2}-[0-9]{2})"), DASHED_FORMAT),
)


@total_ordering
class BillingPeriod:
    """A fixed calendar window [start, end) over which a cost report is generated."""

    __slots__ = ("start", "end", "date_format")

    def __init__(self, start: date, end: date, date_format: str = COMPACT_FORMAT):
        if end <= start:
            raise MalformedPeriod(f"Billing period ends before it starts: {start} - {end}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        object.__setattr__(self, "date_format", date_format)

    def __setattr__(self, name, value):
        raise AttributeError("BillingPeriod is immutable")

    @classmethod
    def parse(cls, raw: str) -> "BillingPeriod":
        """Parse a period prefix such as ``20240101-20240201``.

        Raises:
            MalformedPeriod: If the string is not a valid period
        """
        if not isinstance(raw, str):
            raise MalformedPeriod(f"Billing period must be a string, got {type(raw).__name__}")

        for pattern, date_format in _PATTERNS:
            match = pattern.fullmatch(raw)
            if match is None:
                continue
            try:
                start = datetime.strptime(match.group(1), date_format).date()
                end = datetime.strptime(match.group(2), date_format).date()
            except ValueError as e:
                raise MalformedPeriod(f"Invalid billing period {raw!r}: {e}") from e
            return cls(start, end, date_format)

        raise MalformedPeriod(f"Invalid billing period {raw!r}")

    def canonical_form(self) -> str:
        return f"{self.start.strftime(self.date_format)}-{self.end.strftime(self.date_format)}"

    @property
    def end_instant(self) -> datetime:
        return datetime.combine(self.end, time.min, tzinfo=timezone.utc)

    def is_past_due(self, now: datetime, grace: Optional[timedelta] = None) -> bool:
        """True once the period's billing window has closed.

        A closed period may still receive late corrections, and a newer
        period may have opened, so callers re-resolve periods when this
        becomes true for the most recent one.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now >= self.end_instant + (grace or timedelta(0))

    def _key(self):
        return (self.start, self.end)

    def __eq__(self, other):
        if not isinstance(other, BillingPeriod):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other):
        if not isinstance(other, BillingPeriod):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self):
        return hash(self._key())

    def __str__(self):
        return self.canonical_form()

    def __repr__(self):
        return f"BillingPeriod({self.canonical_form()!r})"
