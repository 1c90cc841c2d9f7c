"""Prometheus HTTP API client.

Exposes the two capabilities the poller needs:
  - instant_query: the current value of a single-series query
  - range_query: the ordered samples of a single-series query over a window

Both shift the requested time back by ``scrape_lag`` so that the values read
have been completely scraped and are no longer changing. The most recent
samples are often incomplete.

Date/Time: Uses `whenever` library (UTC-first, Rust-backed).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import httpx
from whenever import Instant, TimeDelta

from promquery.errors import BackendError, ConfigurationError, ProtocolViolationError

logger = logging.getLogger("promquery.client")

DEFAULT_SCRAPE_LAG = TimeDelta(seconds=30)
DEFAULT_REQUEST_TIMEOUT_SEC = 10.0


@runtime_checkable
class MetricsClient(Protocol):
    async def instant_query(self, query: str, at: Instant) -> float: ...

    async def range_query(
        self, query: str, start: Instant, end: Instant, step: TimeDelta
    ) -> list[float]: ...


def select_address(addresses: Sequence[str], rng: random.Random | None = None) -> str:
    """Pick one backend address for the session."""
    if not addresses:
        raise ConfigurationError("at least one backend address is required")
    return (rng or random).choice(list(addresses))


class PrometheusClient:
    """Async client for the Prometheus ``/api/v1`` query endpoints."""

    def __init__(
        self,
        address: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        scrape_lag: TimeDelta = DEFAULT_SCRAPE_LAG,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        try:
            url = httpx.URL(address)
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"invalid backend address {address!r}: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ConfigurationError(
                f"invalid backend address {address!r}: expected http(s)://host[:port]"
            )

        self.address = str(url).rstrip("/")
        self.scrape_lag = scrape_lag
        self._client = httpx.AsyncClient(
            base_url=self.address, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> PrometheusClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def instant_query(self, query: str, at: Instant) -> float:
        """Return the value of a query that must resolve to exactly one series."""
        data = await self._get(
            "/api/v1/query",
            {"query": query, "time": _timestamp(at - self.scrape_lag)},
            query,
        )

        result_type = data.get("resultType")
        result = data.get("result")
        if result_type != "vector" or not isinstance(result, list):
            raise ProtocolViolationError(query, f"got unexpected result type {result_type!r}")
        if len(result) != 1:
            raise ProtocolViolationError(
                query, f"queries must return exactly one metric, got {len(result)}"
            )

        sample = result[0].get("value") if isinstance(result[0], dict) else None
        if not isinstance(sample, list) or len(sample) != 2:
            raise ProtocolViolationError(query, f"malformed sample {sample!r}")
        return _parse_value(query, sample[1])

    async def range_query(
        self, query: str, start: Instant, end: Instant, step: TimeDelta
    ) -> list[float]:
        """Return the ordered samples of a query over ``[start, end]``.

        No series at all is a valid answer (no history); more than one is not.
        NaN samples are dropped.
        """
        data = await self._get(
            "/api/v1/query_range",
            {
                "query": query,
                "start": _timestamp(start - self.scrape_lag),
                "end": _timestamp(end - self.scrape_lag),
                "step": f"{step.py_timedelta().total_seconds():g}",
            },
            query,
        )

        result_type = data.get("resultType")
        result = data.get("result")
        if result_type != "matrix" or not isinstance(result, list):
            raise ProtocolViolationError(query, f"got unexpected result type {result_type!r}")
        if not result:
            return []
        if len(result) != 1:
            raise ProtocolViolationError(
                query, f"queries must return exactly one metric, got {len(result)}"
            )

        series = result[0]
        samples = series.get("values") if isinstance(series, dict) else None
        if not isinstance(samples, list):
            raise ProtocolViolationError(query, f"malformed series {series!r}")

        values: list[float] = []
        for sample in samples:
            if not isinstance(sample, list) or len(sample) != 2:
                raise ProtocolViolationError(query, f"malformed sample {sample!r}")
            value = _parse_value(query, sample[1])
            if value == value:  # filter NaN
                values.append(value)
        return values

    async def _get(self, path: str, params: dict[str, str], query: str) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise BackendError(query, f"request to {self.address} failed: {exc!r}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error or not isinstance(body, dict) or body.get("status") != "success":
            raise BackendError(query, _describe_failure(response, body))

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProtocolViolationError(query, "response has no data section")
        for warning in body.get("warnings") or []:
            logger.warning("Backend warning for %s: %s", query, warning)
        return data


def _timestamp(at: Instant) -> str:
    return f"{at.py_datetime().timestamp():.3f}"


def _parse_value(query: str, raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolViolationError(query, f"unparseable sample value {raw!r}") from exc


def _describe_failure(response: httpx.Response, body: Any) -> str:
    if isinstance(body, dict) and body.get("error"):
        error_type = body.get("errorType", "error")
        return f"HTTP {response.status_code} {error_type}: {body['error']}"
    return f"HTTP {response.status_code}: {response.text[:200]}"
