"""Configuration for the poller.

Every field can be set through the environment with the ``PROMQUERY_``
prefix (e.g. ``PROMQUERY_INTERVAL_SEC=10``). List fields take JSON
(``PROMQUERY_QUERIES='["sum(up)"]'``). CLI options override the environment.
"""

from enum import StrEnum

from pydantic import Field
from pydantic_settings import BaseSettings
from whenever import TimeDelta


class BaselineErrorPolicy(StrEnum):
    """What to do when a query's baseline cannot be established."""

    EXCLUDE = "exclude"  # Log it and skip the query while waiting
    ABORT = "abort"  # Fail the run with the first baseline error


class PollerSettings(BaseSettings):
    """Settings for a promquery poll run."""

    # Backend
    addresses: list[str] = Field(
        default_factory=list,
        description="Prometheus base URLs; one is picked at random per run",
    )
    request_timeout_sec: float = Field(
        default=10.0, gt=0, description="HTTP timeout for a single backend query"
    )
    scrape_lag_sec: int = Field(
        default=30,
        ge=0,
        description="Query this far in the past so samples are completely scraped",
    )

    # Queries
    queries: list[str] = Field(default_factory=list, description="PromQL queries to watch")
    labels: list[str] = Field(
        default_factory=list,
        description="Extra label matchers injected into every query (name=value, name=~re, ...)",
    )

    # Baseline
    baseline_window_min: int = Field(
        default=30, gt=0, description="Lookback window used to capture the baseline"
    )
    baseline_step_sec: int = Field(
        default=30, gt=0, description="Range query resolution for the baseline window"
    )
    baseline_error_policy: BaselineErrorPolicy = Field(
        default=BaselineErrorPolicy.EXCLUDE,
        description="Skip queries whose baseline failed, or abort the run",
    )

    # Polling
    interval_sec: float = Field(default=30.0, gt=0, description="Delay between polls")
    timeout_sec: float = Field(default=120.0, gt=0, description="Overall deadline for the run")
    success_count: int = Field(
        default=0,
        ge=0,
        description=(
            "In-tolerance samples required before the one that converges. "
            "0 converges on the first in-tolerance sample"
        ),
    )

    model_config = {"env_prefix": "PROMQUERY_"}

    @property
    def interval(self) -> TimeDelta:
        return TimeDelta(seconds=self.interval_sec)

    @property
    def timeout(self) -> TimeDelta:
        return TimeDelta(seconds=self.timeout_sec)

    @property
    def baseline_window(self) -> TimeDelta:
        return TimeDelta(minutes=self.baseline_window_min)

    @property
    def baseline_step(self) -> TimeDelta:
        return TimeDelta(seconds=self.baseline_step_sec)

    @property
    def scrape_lag(self) -> TimeDelta:
        return TimeDelta(seconds=self.scrape_lag_sec)
