"""Error taxonomy for promquery.

- ConfigurationError: bad query syntax, bad matcher, unusable backend address.
  Raised before any network activity.
- BackendError: a single instant/range query failed. Sample-level while
  watching; never fatal to a watcher.
- ProtocolViolationError: the backend answered with a shape the contract
  forbids (not exactly one series, unknown result type, unparseable value).
- LookupInvariantError: a baseline that must exist is missing. Always fatal.
- PollTimeoutError: the overall deadline elapsed before every query converged.
"""


class PromQueryError(Exception):
    """Base class for all promquery errors."""


class ConfigurationError(PromQueryError):
    pass


class QueryParseError(ConfigurationError):
    """Raised when a PromQL expression cannot be parsed."""

    def __init__(self, query: str, message: str, position: int | None = None) -> None:
        self.query = query
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"invalid query {query!r}{where}: {message}")


class BackendError(PromQueryError):
    """Raised when a metrics backend query fails."""

    def __init__(self, query: str, message: str) -> None:
        self.query = query
        super().__init__(f"query {query!r} failed: {message}")


class ProtocolViolationError(BackendError):
    pass


class LookupInvariantError(PromQueryError):
    pass


class PollTimeoutError(PromQueryError):
    """Raised when the polling deadline expires before convergence."""

    def __init__(self, timeout_sec: float, pending: list[str] | None = None) -> None:
        self.timeout_sec = timeout_sec
        self.pending = pending or []
        detail = f" (still waiting on {len(self.pending)} queries)" if self.pending else ""
        super().__init__(
            f"deadline of {timeout_sec:g}s elapsed before polling was complete{detail}"
        )
