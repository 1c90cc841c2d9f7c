"""Pydantic models for promquery.

- Baseline: reference value and tolerance band captured before watching
- PollOutcome: terminal summary of a poll run
- PollerSettings: environment-backed configuration
"""

from .baseline import Baseline, OutcomeStatus, PollOutcome
from .config import BaselineErrorPolicy, PollerSettings

__all__ = [
    "Baseline",
    "BaselineErrorPolicy",
    "OutcomeStatus",
    "PollOutcome",
    "PollerSettings",
]
