"""Per-query convergence watcher.

State machine:

    Start -> Sleeping (one interval) -> Sampling -> ...
      Sampling, backend/protocol error     -> reset streak -> Sleeping
      Sampling, |current - ref| <= tol     -> Converged if streak >= required
                                              else streak += 1 -> Sleeping
      Sampling, |current - ref| >  tol     -> reset streak -> Sleeping
      any state, cancelled                 -> Aborted (CancelledError propagates)

Sleeping first keeps the watcher from reading a value from before the
interval began and from hammering the backend. Sample errors never end the
watch; only cancellation does.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from whenever import Instant, TimeDelta

from promquery.errors import BackendError, LookupInvariantError

if TYPE_CHECKING:
    from promquery.client import MetricsClient
    from promquery.models import Baseline
    from promquery.query import PromQuery

logger = logging.getLogger("promquery.watcher")

SampleCallback = Callable[[str], None]


def within_tolerance(reference: float, tolerance: float, value: float) -> bool:
    return abs(value - reference) <= tolerance


class ConvergenceWatcher:
    """Polls one query until it is back within tolerance of its baseline."""

    def __init__(
        self,
        client: MetricsClient,
        query: PromQuery,
        baseline: Baseline,
        *,
        interval: TimeDelta,
        required_successes: int = 0,
        on_sample: SampleCallback | None = None,
    ) -> None:
        if not baseline.found:
            raise LookupInvariantError(f"no baseline was found for query({query}), cannot watch it")
        if baseline.query != str(query):
            raise LookupInvariantError(
                f"baseline for query({baseline.query}) was handed to the watcher of query({query})"
            )

        self.client = client
        self.query = query
        self.baseline = baseline
        self.interval = interval
        self.required_successes = required_successes
        self.on_sample = on_sample

        # Consecutive in-tolerance samples seen so far
        self.consecutive = 0
        self.samples = 0
        self.errors = 0
        self.converged = False
        self._started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    async def watch(self) -> None:
        """Run until converged. Cancellation is the only way out otherwise."""
        self._started = time.monotonic()
        pause = self.interval.py_timedelta().total_seconds()
        try:
            while not self.converged:
                logger.debug(
                    "Waiting %gs (%.1fs elapsed) to poll %s",
                    pause,
                    self.elapsed(),
                    self.query,
                )
                await asyncio.sleep(pause)
                await self.sample()
        except asyncio.CancelledError:
            logger.info(
                "Stopped watching %s after %d samples (%d errors)",
                self.query,
                self.samples,
                self.errors,
            )
            raise

    async def sample(self) -> bool:
        """Take one sample and advance the state machine. Returns True once converged."""
        try:
            value = await self.client.instant_query(str(self.query), Instant.now())
        except BackendError as exc:
            self.errors += 1
            self.consecutive = 0
            logger.warning("error while polling %s: %s", self.query, exc)
            return False

        self.samples += 1
        reference = self.baseline.reference_value
        if self.on_sample is not None:
            self.on_sample(
                f"initial value {reference:g}, current value {value:g} "
                f"({self.elapsed():.1f}s elapsed)"
            )

        if not within_tolerance(reference, self.baseline.tolerance, value):
            self.consecutive = 0
            logger.debug(
                "%s still outside tolerance: |%g - %g| > %g",
                self.query,
                value,
                reference,
                self.baseline.tolerance,
            )
            return False

        if self.consecutive >= self.required_successes:
            self.converged = True
            logger.info(
                "%s converged at %g (initial %g, tolerance %g) after %.1fs",
                self.query,
                value,
                reference,
                self.baseline.tolerance,
                self.elapsed(),
            )
            return True

        self.consecutive += 1
        return False
