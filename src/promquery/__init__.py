"""promquery - block until Prometheus metrics return to their pre-disturbance baseline.

Quick Start:
    from whenever import TimeDelta
    from promquery import Poller

    async with Poller.create(
        ["http://prometheus:9090"],
        ['sum(rate(http_requests_total{code=~"5.."}[1m]))'],
    ) as poller:
        outcome = await poller.run(TimeDelta(seconds=30), TimeDelta(minutes=2))
        assert outcome.ok
"""

from promquery.baseline import BaselineEstimator, calc_std_dev
from promquery.client import MetricsClient, PrometheusClient
from promquery.errors import (
    BackendError,
    ConfigurationError,
    LookupInvariantError,
    PollTimeoutError,
    PromQueryError,
    ProtocolViolationError,
    QueryParseError,
)
from promquery.models import Baseline, BaselineErrorPolicy, PollerSettings, PollOutcome
from promquery.poller import Poller
from promquery.query import PromQuery
from promquery.watcher import ConvergenceWatcher, within_tolerance

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "Baseline",
    "BaselineErrorPolicy",
    "BaselineEstimator",
    "ConfigurationError",
    "ConvergenceWatcher",
    "LookupInvariantError",
    "MetricsClient",
    "PollOutcome",
    "PollTimeoutError",
    "Poller",
    "PollerSettings",
    "PromQuery",
    "PromQueryError",
    "PrometheusClient",
    "ProtocolViolationError",
    "QueryParseError",
    "calc_std_dev",
    "within_tolerance",
]
