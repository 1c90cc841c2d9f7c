"""Property tests for baseline tolerance and convergence.

- Tolerance is never negative or NaN
- A value equal to its reference is always within tolerance
- A watcher converges exactly when the in-tolerance streak is long enough
"""

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from promquery.baseline import calc_std_dev
from promquery.models import Baseline
from promquery.query import PromQuery
from promquery.watcher import ConvergenceWatcher, within_tolerance
from tests.fakes import FAST_INTERVAL, FakeMetricsClient

from .strategies import sample_histories, sample_values, tolerances

pytestmark = pytest.mark.anyio

# =============================================================================
# TOLERANCE
# =============================================================================


@given(values=sample_histories)
@settings(max_examples=500)
def test_tolerance_is_non_negative_and_finite(values: list[float]):
    """Property: calc_std_dev never yields a negative or NaN tolerance."""
    std_dev, last = calc_std_dev(values)
    assert std_dev >= 0
    assert not math.isnan(std_dev)
    assert last == values[-1]


@given(values=sample_histories)
@settings(max_examples=200)
def test_tolerance_builds_a_valid_baseline(values: list[float]):
    """Property: every computed tolerance passes Baseline validation."""
    std_dev, last = calc_std_dev(values)
    baseline = Baseline(
        query="up",
        found=True,
        reference_value=last,
        tolerance=std_dev,
        sample_count=len(values),
    )
    assert baseline.tolerance == std_dev


@given(value=sample_values, tolerance=tolerances)
def test_reference_value_is_within_tolerance(value: float, tolerance: float):
    """Property: the reference value itself is always within any tolerance."""
    assert within_tolerance(value, tolerance, value)


@given(reference=sample_values, tolerance=tolerances, value=sample_values)
def test_within_tolerance_matches_distance(reference: float, tolerance: float, value: float):
    assert within_tolerance(reference, tolerance, value) == (abs(value - reference) <= tolerance)


# =============================================================================
# CONVERGENCE STREAKS
# =============================================================================


def _first_convergence(in_tolerance: list[bool], required: int) -> int | None:
    streak = 0
    for index, ok in enumerate(in_tolerance):
        if not ok:
            streak = 0
            continue
        if streak >= required:
            return index
        streak += 1
    return None


@given(
    in_tolerance=st.lists(st.booleans(), min_size=1, max_size=15),
    required=st.integers(min_value=0, max_value=4),
)
@settings(max_examples=100)
async def test_converges_after_required_streak(in_tolerance: list[bool], required: int):
    """Property: convergence happens on the first sample that completes a streak of required + 1."""
    script = [10.0 if ok else 100.0 for ok in in_tolerance]
    baseline = Baseline(
        query="up", found=True, reference_value=10.0, tolerance=1.0, sample_count=1
    )
    watcher = ConvergenceWatcher(
        FakeMetricsClient(samples={"up": script}),
        PromQuery.parse("up"),
        baseline,
        interval=FAST_INTERVAL,
        required_successes=required,
    )

    converged_at = None
    for index in range(len(script)):
        if await watcher.sample():
            converged_at = index
            break

    assert converged_at == _first_convergence(in_tolerance, required)
