"""Baseline capture: what "normal" looked like before the disturbance.

For each query, a range query over a fixed lookback window yields a sample
sequence. The most recent sample becomes the reference value and the
population standard deviation of the window becomes the tolerance, so a
query later counts as recovered once it is back inside its usual noise band
rather than at an exact value.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import TYPE_CHECKING

from whenever import Instant, TimeDelta

from promquery.models import Baseline

if TYPE_CHECKING:
    from promquery.client import MetricsClient
    from promquery.query import PromQuery

logger = logging.getLogger("promquery.baseline")

DEFAULT_WINDOW = TimeDelta(minutes=30)
DEFAULT_STEP = TimeDelta(seconds=30)


def calc_std_dev(values: Sequence[float]) -> tuple[float, float]:
    """Return (population standard deviation, most recent value).

    Uses ``sqrt(mean(x^2) - mean(x)^2)``. With small or nearly constant values
    the radicand can come out slightly negative through floating-point
    cancellation, and an infinite sample makes it NaN; both clamp to 0.
    """
    if not values:
        raise ValueError("cannot compute a standard deviation of no samples")

    count = len(values)
    total = sum(values)
    squared_total = sum(v * v for v in values)
    mean = total / count

    variance = squared_total / count - mean * mean
    # NaN compares false, so it lands on 0 too
    std_dev = math.sqrt(variance) if variance > 0 else 0.0

    return std_dev, values[-1]


class BaselineEstimator:
    """Establishes a Baseline per query from its recent history."""

    def __init__(
        self,
        client: MetricsClient,
        *,
        window: TimeDelta = DEFAULT_WINDOW,
        step: TimeDelta = DEFAULT_STEP,
    ) -> None:
        self.client = client
        self.window = window
        self.step = step

    async def establish(self, query: PromQuery, now: Instant | None = None) -> Baseline:
        """Capture the baseline for one query.

        Raises:
            BackendError: the range query failed.
            ProtocolViolationError: the query resolved to more than one series.
        """
        now = now or Instant.now()
        samples = await self.client.range_query(str(query), now - self.window, now, self.step)

        if not samples:
            logger.info("No initial values for %s found, will skip while waiting", query)
            return Baseline.not_found(str(query))

        tolerance, latest = calc_std_dev(samples)
        logger.info(
            "Initial values for %s: stddev: %0.4f, initial val: %0.4f (%d samples)",
            query,
            tolerance,
            latest,
            len(samples),
        )
        return Baseline(
            query=str(query),
            found=True,
            reference_value=latest,
            tolerance=tolerance,
            sample_count=len(samples),
        )
