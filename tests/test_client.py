"""Tests for the Prometheus HTTP client against httpx.MockTransport."""

from __future__ import annotations

import logging
import math
import random

import httpx
import pytest
from whenever import TimeDelta

from promquery.client import MetricsClient, PrometheusClient, select_address
from promquery.errors import BackendError, ConfigurationError, ProtocolViolationError
from tests.fakes import FakeMetricsClient, prometheus_matrix, prometheus_vector

pytestmark = pytest.mark.anyio


async def _instant(handler, now, **kwargs) -> float:
    transport = httpx.MockTransport(handler)
    async with PrometheusClient("http://prometheus:9090", transport=transport, **kwargs) as c:
        return await c.instant_query("up", now)


async def _range(handler, now) -> list[float]:
    transport = httpx.MockTransport(handler)
    async with PrometheusClient("http://prometheus:9090", transport=transport) as c:
        return await c.range_query("up", now - TimeDelta(minutes=30), now, TimeDelta(seconds=30))


class TestInstantQuery:
    async def test_returns_single_value(self, now):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=prometheus_vector("42.5"))

        assert await _instant(handler, now) == 42.5
        assert requests[0].url.path == "/api/v1/query"
        assert requests[0].url.params["query"] == "up"

    async def test_time_is_shifted_back_by_scrape_lag(self, now):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json=prometheus_vector())

        await _instant(handler, now)
        assert seen["time"] == f"{now.py_datetime().timestamp() - 30:.3f}"

        await _instant(handler, now, scrape_lag=TimeDelta(seconds=0))
        assert seen["time"] == f"{now.py_datetime().timestamp():.3f}"

    async def test_special_float_values(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_vector("NaN"))

        assert math.isnan(await _instant(handler, now))

        def inf_handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_vector("+Inf"))

        assert await _instant(inf_handler, now) == math.inf

    @pytest.mark.parametrize("series", [0, 2])
    async def test_requires_exactly_one_series(self, now, series):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_vector(series=series))

        with pytest.raises(ProtocolViolationError, match="exactly one metric"):
            await _instant(handler, now)

    async def test_scalar_result_rejected(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            body = {"status": "success", "data": {"resultType": "scalar", "result": [0, "1"]}}
            return httpx.Response(200, json=body)

        with pytest.raises(ProtocolViolationError, match="unexpected result type"):
            await _instant(handler, now)

    async def test_unparseable_value(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_vector("not-a-number"))

        with pytest.raises(ProtocolViolationError, match="unparseable"):
            await _instant(handler, now)

    async def test_api_error_carries_error_type(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            body = {"status": "error", "errorType": "bad_data", "error": "parse error at char 3"}
            return httpx.Response(400, json=body)

        with pytest.raises(BackendError, match="bad_data: parse error") as info:
            await _instant(handler, now)
        assert not isinstance(info.value, ProtocolViolationError)

    async def test_non_json_error_response(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(BackendError, match="HTTP 502"):
            await _instant(handler, now)

    async def test_transport_failure(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BackendError, match="connection refused"):
            await _instant(handler, now)

    async def test_missing_data_section(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "success"})

        with pytest.raises(ProtocolViolationError, match="no data section"):
            await _instant(handler, now)

    async def test_backend_warnings_are_logged(self, now, caplog):
        def handler(request: httpx.Request) -> httpx.Response:
            body = prometheus_vector()
            body["warnings"] = ["query hit the sample limit"]
            return httpx.Response(200, json=body)

        with caplog.at_level(logging.WARNING, logger="promquery.client"):
            await _instant(handler, now)
        assert "query hit the sample limit" in caplog.text


class TestRangeQuery:
    async def test_returns_ordered_samples(self, now):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen.update(request.url.params)
            return httpx.Response(200, json=prometheus_matrix(["1", "2", "3.5"]))

        assert await _range(handler, now) == [1.0, 2.0, 3.5]
        assert seen["path"] == "/api/v1/query_range"
        assert seen["step"] == "30"
        assert seen["start"] == f"{now.py_datetime().timestamp() - 1800 - 30:.3f}"
        assert seen["end"] == f"{now.py_datetime().timestamp() - 30:.3f}"

    async def test_no_series_is_empty_history(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_matrix([], series=0))

        assert await _range(handler, now) == []

    async def test_nan_samples_dropped(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_matrix(["1", "NaN", "3"]))

        assert await _range(handler, now) == [1.0, 3.0]

    async def test_multiple_series_rejected(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_matrix(["1"], series=2))

        with pytest.raises(ProtocolViolationError, match="exactly one metric, got 2"):
            await _range(handler, now)

    async def test_vector_result_rejected(self, now):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=prometheus_vector())

        with pytest.raises(ProtocolViolationError, match="unexpected result type"):
            await _range(handler, now)

    @pytest.mark.parametrize("series", ["oops", {"metric": {}}, {"metric": {}, "values": None}])
    async def test_malformed_series_rejected(self, now, series):
        def handler(request: httpx.Request) -> httpx.Response:
            body = {"status": "success", "data": {"resultType": "matrix", "result": [series]}}
            return httpx.Response(200, json=body)

        with pytest.raises(ProtocolViolationError, match="malformed series"):
            await _range(handler, now)

    async def test_sub_second_step_and_times(self, now):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json=prometheus_matrix(["1"]))

        end = now + TimeDelta(milliseconds=250)
        transport = httpx.MockTransport(handler)
        async with PrometheusClient(
            "http://prometheus:9090", transport=transport, scrape_lag=TimeDelta(seconds=0)
        ) as client:
            await client.range_query("up", now, end, TimeDelta(milliseconds=500))

        assert seen["step"] == "0.5"
        assert seen["start"] == f"{now.py_datetime().timestamp():.3f}"
        assert seen["end"] == f"{now.py_datetime().timestamp() + 0.25:.3f}"


class TestConstruction:
    @pytest.mark.parametrize("address", ["ftp://prometheus:9090", "prometheus", ""])
    def test_invalid_address(self, address):
        with pytest.raises(ConfigurationError, match="invalid backend address"):
            PrometheusClient(address)

    async def test_trailing_slash_trimmed(self):
        async with PrometheusClient("http://prometheus:9090/") as client:
            assert client.address == "http://prometheus:9090"

    def test_select_address_requires_one(self):
        with pytest.raises(ConfigurationError):
            select_address([])

    def test_select_address_picks_a_member(self):
        addresses = ["http://a:9090", "http://b:9090", "http://c:9090"]
        for seed in range(10):
            assert select_address(addresses, random.Random(seed)) in addresses

    def test_clients_satisfy_protocol(self):
        assert isinstance(PrometheusClient("http://prometheus:9090"), MetricsClient)
        assert isinstance(FakeMetricsClient(), MetricsClient)
