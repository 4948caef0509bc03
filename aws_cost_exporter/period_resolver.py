"""Resolve the bounded window of billing periods available remotely."""

from typing import Dict, List

from .billing_period import BillingPeriod
from .config_loader import get_setting
from .utils import PerformanceTimer, as_int, get_logger

DEFAULT_RETAINED_PERIODS = 3


class PeriodResolver:
    """List remote billing periods and keep the most recent ones.

    The window covers the current period plus enough trailing periods to
    absorb late cost corrections while bounding local storage.
    """

    def __init__(self, config: Dict, source):
        self.source = source
        self.logger = get_logger("period_resolver")
        self.retained = as_int(get_setting(config, "periods.retained"), DEFAULT_RETAINED_PERIODS)
        if self.retained < 1:
            raise ValueError(f"periods.retained must be at least 1, got {self.retained}")

    def resolve(self) -> List[BillingPeriod]:
        """Return the retained periods in ascending order, most recent last.

        Raises:
            MalformedPeriod: If any remote prefix is not a billing period
            TransferFailure: If the listing fails
        """
        with PerformanceTimer("Resolve billing periods", self.logger):
            names = self.source.list_prefixes()
            periods = sorted({BillingPeriod.parse(name) for name in names})

        retained = periods[-self.retained:]
        self.logger.info(
            "Resolved billing periods",
            available=len(periods),
            retained=[str(p) for p in retained],
        )
        return retained
