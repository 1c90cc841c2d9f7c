"""Baseline and outcome models.

A Baseline is captured once per query before watching starts and is never
mutated afterwards. PollOutcome is the terminal summary of a whole run.
"""

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class Baseline(BaseModel):
    """What "normal" looked like for one query before the disturbance."""

    model_config = {"frozen": True}

    query: str = Field(description="Canonical (serialized) query expression")
    found: bool = Field(description="False when the lookback window held no samples")
    reference_value: float = Field(
        default=0.0,
        description="Most recent sample in the lookback window",
    )
    tolerance: float = Field(
        default=0.0,
        ge=0,
        description="Population standard deviation of the lookback window",
    )
    sample_count: int = Field(default=0, ge=0, description="Samples in the lookback window")
    error: str | None = Field(
        default=None,
        description="Why the baseline could not be established, if it was excluded",
    )

    @model_validator(mode="after")
    def _found_requires_samples(self) -> "Baseline":
        if self.found and self.sample_count == 0:
            raise ValueError("a found baseline must be computed from at least one sample")
        return self

    @classmethod
    def not_found(cls, query: str, error: str | None = None) -> "Baseline":
        return cls(query=query, found=False, error=error)


class OutcomeStatus(StrEnum):
    CONVERGED = "converged"  # Every watched query returned within tolerance
    FAILED = "failed"  # A baseline or watcher failed unrecoverably
    TIMED_OUT = "timed_out"  # Deadline elapsed first


class PollOutcome(BaseModel):
    """Terminal result of a poll run."""

    status: OutcomeStatus
    error: str | None = Field(default=None, description="Error message when not converged")
    converged: list[str] = Field(
        default_factory=list, description="Queries that were watched until convergence"
    )
    skipped: list[str] = Field(
        default_factory=list, description="Queries excluded because no baseline was found"
    )
    elapsed_sec: float = Field(ge=0, description="Wall time spent in the run")

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.CONVERGED
