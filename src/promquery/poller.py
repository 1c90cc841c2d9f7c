"""Poller: block until a set of queries return to their baselines.

Usage:
    async with Poller.create(["http://prometheus:9090"], queries) as poller:
        await poller.initialize_baselines()
        await poller.wait(TimeDelta(seconds=30), timeout=TimeDelta(minutes=2))

Phases:
1. create: parse every query, inject extra matchers, de-duplicate by the
   serialized expression, pick one backend address.
2. initialize_baselines: capture every baseline concurrently. Each query
   reports independently; one failure never cancels the others.
3. wait: one ConvergenceWatcher per query that has a baseline, run in a task
   group. The first watcher error cancels the rest; the deadline cancels
   everything and is reported as PollTimeoutError.

Baselines are assembled into a read-only mapping before any watcher starts,
so watchers share no mutable state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType
from typing import TYPE_CHECKING

from whenever import Instant, TimeDelta

from promquery.baseline import DEFAULT_STEP, DEFAULT_WINDOW, BaselineEstimator
from promquery.client import (
    DEFAULT_REQUEST_TIMEOUT_SEC,
    DEFAULT_SCRAPE_LAG,
    PrometheusClient,
    select_address,
)
from promquery.errors import (
    ConfigurationError,
    LookupInvariantError,
    PollTimeoutError,
    PromQueryError,
)
from promquery.models import (
    Baseline,
    BaselineErrorPolicy,
    OutcomeStatus,
    PollerSettings,
    PollOutcome,
)
from promquery.query import PromQuery, parse_matcher
from promquery.watcher import ConvergenceWatcher

if TYPE_CHECKING:
    import random
    from types import TracebackType

    import httpx

    from promquery.client import MetricsClient
    from promquery.query import LabelMatcher
    from promquery.watcher import SampleCallback

logger = logging.getLogger("promquery.poller")


def dedupe_queries(
    queries: Iterable[PromQuery | str],
    matchers: Sequence[LabelMatcher] = (),
) -> list[PromQuery]:
    """Parse, scope and de-duplicate queries by serialized form, keeping first-seen order."""
    seen: set[str] = set()
    deduped: list[PromQuery] = []
    for raw in queries:
        query = raw if isinstance(raw, PromQuery) else PromQuery.parse(raw)
        for matcher in matchers:
            query = query.with_matcher(matcher)
        if str(query) in seen:
            continue
        seen.add(str(query))
        deduped.append(query)
    return deduped


class Poller:
    """Captures baselines for a set of queries and waits for them to converge."""

    def __init__(
        self,
        client: MetricsClient,
        queries: Iterable[PromQuery | str],
        success_count: int = 0,
        *,
        matchers: Sequence[LabelMatcher] = (),
        baseline_window: TimeDelta = DEFAULT_WINDOW,
        baseline_step: TimeDelta = DEFAULT_STEP,
        baseline_error_policy: BaselineErrorPolicy = BaselineErrorPolicy.EXCLUDE,
    ) -> None:
        if success_count < 0:
            raise ConfigurationError("success_count must be >= 0")

        self.client = client
        self.queries = dedupe_queries(queries, matchers)
        self.success_count = success_count
        self.baseline_error_policy = baseline_error_policy
        self.estimator = BaselineEstimator(client, window=baseline_window, step=baseline_step)
        self._baselines: Mapping[str, Baseline] = MappingProxyType({})
        self._owned_client: PrometheusClient | None = None

    @classmethod
    def create(
        cls,
        addresses: Sequence[str],
        queries: Iterable[str],
        success_count: int = 0,
        *,
        matchers: Sequence[LabelMatcher] = (),
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        scrape_lag: TimeDelta = DEFAULT_SCRAPE_LAG,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
        **options,
    ) -> Poller:
        """Build a poller talking to one of ``addresses`` (picked at random).

        Raises ConfigurationError before any network activity when a query or
        matcher is invalid, ``success_count`` is negative or no usable address
        was given.
        """
        if success_count < 0:
            raise ConfigurationError("success_count must be >= 0")
        parsed = dedupe_queries(queries, matchers)
        address = select_address(addresses, rng)
        client = PrometheusClient(
            address, timeout=request_timeout, scrape_lag=scrape_lag, transport=transport
        )
        logger.info("Polling %d queries against %s", len(parsed), address)

        poller = cls(client, parsed, success_count, **options)
        poller._owned_client = client
        return poller

    @classmethod
    def from_settings(
        cls,
        settings: PollerSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> Poller:
        return cls.create(
            settings.addresses,
            settings.queries,
            settings.success_count,
            matchers=[parse_matcher(label) for label in settings.labels],
            request_timeout=settings.request_timeout_sec,
            scrape_lag=settings.scrape_lag,
            transport=transport,
            rng=rng,
            baseline_window=settings.baseline_window,
            baseline_step=settings.baseline_step,
            baseline_error_policy=settings.baseline_error_policy,
        )

    async def __aenter__(self) -> Poller:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owned_client is not None:
            await self._owned_client.aclose()

    @property
    def baselines(self) -> Mapping[str, Baseline]:
        return self._baselines

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    async def initialize_baselines(self, now: Instant | None = None) -> Mapping[str, Baseline]:
        """Capture the baseline of every query concurrently.

        Under the ``exclude`` policy a query whose baseline fails is logged
        and recorded as not found, so it is skipped while waiting. Under
        ``abort`` the first failure (in query order) is raised once every
        query has finished.
        """
        now = now or Instant.now()
        logger.info("Gathering initial values for %d queries...", len(self.queries))

        results = await asyncio.gather(
            *(self.estimator.establish(query, now) for query in self.queries),
            return_exceptions=True,
        )

        baselines: dict[str, Baseline] = {}
        first_error: PromQueryError | None = None
        for query, result in zip(self.queries, results, strict=True):
            if isinstance(result, Baseline):
                baselines[str(query)] = result
                continue
            if not isinstance(result, PromQueryError):
                raise result

            logger.error("error getting stddev for %s: %s", query, result)
            baselines[str(query)] = Baseline.not_found(str(query), error=str(result))
            if first_error is None:
                first_error = result

        self._baselines = MappingProxyType(baselines)

        if first_error is not None and self.baseline_error_policy == BaselineErrorPolicy.ABORT:
            raise first_error
        return self._baselines

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait(
        self,
        interval: TimeDelta,
        *,
        timeout: TimeDelta | None = None,
        on_sample: SampleCallback | None = None,
    ) -> None:
        """Block until every query with a baseline has converged.

        Raises:
            LookupInvariantError: a query has no recorded baseline.
            PollTimeoutError: ``timeout`` elapsed first.
            Exception: the first error raised by a watcher; the rest are cancelled.
        """
        deadline = None
        timeout_sec = 0.0
        if timeout is not None:
            timeout_sec = timeout.py_timedelta().total_seconds()
            deadline = asyncio.get_running_loop().time() + timeout_sec
        await self._wait_until(interval, deadline, timeout_sec, on_sample)

    async def _wait_until(
        self,
        interval: TimeDelta,
        deadline: float | None,
        timeout_sec: float,
        on_sample: SampleCallback | None,
    ) -> None:
        watchers = self._build_watchers(interval, on_sample)

        try:
            async with asyncio.timeout_at(deadline) as scope:
                await self._run_watchers(watchers, interval)
        except TimeoutError as exc:
            if not scope.expired():
                raise
            pending = [str(w.query) for w in watchers if not w.converged]
            raise PollTimeoutError(timeout_sec, pending) from exc

    def _build_watchers(
        self, interval: TimeDelta, on_sample: SampleCallback | None
    ) -> list[ConvergenceWatcher]:
        watchers = []
        for query in self.queries:
            baseline = self._baselines.get(str(query))
            if baseline is None:
                raise LookupInvariantError(f"unable to find baseline entry for query({query})")
            if not baseline.found:
                logger.info(
                    "didn't find initial values for query(%s), not waiting for it to resolve",
                    query,
                )
                continue
            watchers.append(
                ConvergenceWatcher(
                    self.client,
                    query,
                    baseline,
                    interval=interval,
                    required_successes=self.success_count,
                    on_sample=on_sample,
                )
            )
        return watchers

    async def _run_watchers(self, watchers: list[ConvergenceWatcher], interval: TimeDelta) -> None:
        if not watchers:
            # Nothing to watch: still let one polling period pass
            pause = interval.py_timedelta().total_seconds()
            logger.info("No queries to wait for, waiting %gs", pause)
            await asyncio.sleep(pause)
            return

        try:
            async with asyncio.TaskGroup() as group:
                for watcher in watchers:
                    group.create_task(watcher.watch(), name=f"watch {watcher.query}")
        except ExceptionGroup as errors:
            # First failure wins; siblings have already been cancelled and awaited
            raise errors.exceptions[0] from None

    # ------------------------------------------------------------------
    # One-shot run
    # ------------------------------------------------------------------

    async def run(
        self,
        interval: TimeDelta,
        timeout: TimeDelta,
        *,
        on_sample: SampleCallback | None = None,
    ) -> PollOutcome:
        """Capture baselines and wait, all under one deadline, and summarize the result."""
        started = time.monotonic()
        loop = asyncio.get_running_loop()
        timeout_sec = timeout.py_timedelta().total_seconds()
        deadline = loop.time() + timeout_sec

        def outcome(status: OutcomeStatus, error: Exception | None = None) -> PollOutcome:
            found = [query for query, baseline in self._baselines.items() if baseline.found]
            return PollOutcome(
                status=status,
                error=str(error) if error is not None else None,
                converged=found if status == OutcomeStatus.CONVERGED else [],
                skipped=[q for q, b in self._baselines.items() if not b.found],
                elapsed_sec=time.monotonic() - started,
            )

        try:
            try:
                async with asyncio.timeout_at(deadline) as scope:
                    await self.initialize_baselines()
            except TimeoutError as exc:
                if not scope.expired():
                    raise
                raise PollTimeoutError(timeout_sec) from exc
            await self._wait_until(interval, deadline, timeout_sec, on_sample)
        except PollTimeoutError as exc:
            logger.error("%s", exc)
            return outcome(OutcomeStatus.TIMED_OUT, exc)
        except PromQueryError as exc:
            logger.error("error polling metrics: %s", exc)
            return outcome(OutcomeStatus.FAILED, exc)

        logger.info("All queries converged in %.1fs", time.monotonic() - started)
        return outcome(OutcomeStatus.CONVERGED)
