"""Tests for the per-query convergence state machine."""

from __future__ import annotations

import asyncio

import pytest

from promquery.errors import BackendError, LookupInvariantError, ProtocolViolationError
from promquery.models import Baseline
from promquery.query import PromQuery
from promquery.watcher import ConvergenceWatcher, within_tolerance
from tests.fakes import FAST_INTERVAL, FakeMetricsClient

pytestmark = pytest.mark.anyio

QUERY = PromQuery.parse("error_rate")
BASELINE = Baseline(
    query="error_rate", found=True, reference_value=10.0, tolerance=2.0, sample_count=60
)


def _watcher(samples, required_successes=0, on_sample=None) -> ConvergenceWatcher:
    client = FakeMetricsClient(samples={"error_rate": samples})
    return ConvergenceWatcher(
        client,
        QUERY,
        BASELINE,
        interval=FAST_INTERVAL,
        required_successes=required_successes,
        on_sample=on_sample,
    )


async def _sample(watcher: ConvergenceWatcher, times: int) -> list[bool]:
    return [await watcher.sample() for _ in range(times)]


class TestWithinTolerance:
    def test_boundary_is_inclusive(self):
        assert within_tolerance(10.0, 2.0, 12.0)
        assert within_tolerance(10.0, 2.0, 8.0)
        assert not within_tolerance(10.0, 2.0, 12.5)

    def test_zero_tolerance_needs_exact_value(self):
        assert within_tolerance(3.0, 0.0, 3.0)
        assert not within_tolerance(3.0, 0.0, 3.0001)


class TestSampling:
    async def test_in_tolerance_converges_immediately(self):
        watcher = _watcher([11.5])
        assert await _sample(watcher, 1) == [True]
        assert watcher.converged

    async def test_out_of_tolerance_resets(self):
        watcher = _watcher([13.0, 11.5])
        assert await _sample(watcher, 2) == [False, True]

    async def test_success_count_needs_an_unbroken_streak(self):
        watcher = _watcher([11.5, 11.5, 13.0, 11.5, 11.5, 11.5], required_successes=2)
        assert await _sample(watcher, 6) == [False, False, False, False, False, True]
        assert watcher.samples == 6

    async def test_backend_error_is_retried(self):
        watcher = _watcher([BackendError("error_rate", "HTTP 503"), 11.5])
        assert await _sample(watcher, 2) == [False, True]
        assert watcher.errors == 1
        assert watcher.samples == 1

    async def test_protocol_violation_is_sample_level(self):
        watcher = _watcher([ProtocolViolationError("error_rate", "got 2 series"), 11.5])
        assert await _sample(watcher, 2) == [False, True]

    async def test_error_resets_the_streak(self):
        watcher = _watcher(
            [11.5, BackendError("error_rate", "timeout"), 11.5, 11.5], required_successes=1
        )
        assert await _sample(watcher, 4) == [False, False, False, True]

    async def test_on_sample_receives_status_line(self):
        lines: list[str] = []
        watcher = _watcher([13.0, 11.5], on_sample=lines.append)
        await _sample(watcher, 2)

        assert len(lines) == 2
        assert lines[0].startswith("initial value 10, current value 13 (")
        assert lines[1].startswith("initial value 10, current value 11.5 (")
        assert lines[1].endswith("s elapsed)")

    async def test_on_sample_not_called_on_error(self):
        lines: list[str] = []
        watcher = _watcher([BackendError("error_rate", "HTTP 503")], on_sample=lines.append)
        await _sample(watcher, 1)
        assert lines == []


class TestWatch:
    async def test_watch_returns_once_converged(self):
        watcher = _watcher([13.0, 14.0, 11.0])
        await watcher.watch()

        assert watcher.converged
        assert watcher.client.instant_calls == ["error_rate"] * 3

    async def test_sleeps_before_first_sample(self):
        watcher = _watcher([11.0])

        task = asyncio.create_task(watcher.watch())
        await asyncio.sleep(0)
        assert watcher.client.instant_calls == []
        await task
        assert watcher.converged

    async def test_cancellation_propagates(self):
        watcher = _watcher([50.0])

        task = asyncio.create_task(watcher.watch())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not watcher.converged
        assert watcher.samples >= 1


class TestConstruction:
    def test_not_found_baseline_rejected(self):
        with pytest.raises(LookupInvariantError):
            ConvergenceWatcher(
                FakeMetricsClient(),
                QUERY,
                Baseline.not_found("error_rate"),
                interval=FAST_INTERVAL,
            )

    def test_baseline_for_another_query_rejected(self):
        with pytest.raises(LookupInvariantError):
            ConvergenceWatcher(
                FakeMetricsClient(),
                PromQuery.parse("other_rate"),
                BASELINE,
                interval=FAST_INTERVAL,
            )
