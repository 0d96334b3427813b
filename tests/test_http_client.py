from __future__ import annotations

import httpx
import pytest

from propyield.errors import UpstreamError
from propyield.http_client import ResilientClient, backoff_delay


def _scripted(statuses: list[int], headers: dict[str, str] | None = None):
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status = statuses[min(len(calls) - 1, len(statuses) - 1)]
        return httpx.Response(status, json={"status": status}, headers=headers or {})

    return handler, calls


def _client(handler, sleeps: list[float], **kwargs) -> ResilientClient:
    return ResilientClient(
        base_url="https://api.example.test",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
        rng=lambda: 0.0,
        max_attempts=3,
        base_delay=1.0,
        max_delay=60.0,
        **kwargs,
    )


def test_backoff_doubles_and_caps() -> None:
    assert backoff_delay(0, 1.0, 60.0, rng=lambda: 0.0) == 1.0
    assert backoff_delay(2, 1.0, 60.0, rng=lambda: 0.0) == 4.0
    assert backoff_delay(1, 1.0, 60.0, rng=lambda: 0.5) == 2.5
    assert backoff_delay(10, 1.0, 60.0, rng=lambda: 0.0) == 60.0


def test_retries_transient_status_then_succeeds() -> None:
    handler, calls = _scripted([503, 502, 200])
    sleeps: list[float] = []

    resp = _client(handler, sleeps).get("/runs")

    assert resp.status_code == 200
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("status", [400, 401, 402, 404])
def test_non_retryable_status_returned_immediately(status: int) -> None:
    handler, calls = _scripted([status])
    sleeps: list[float] = []

    resp = _client(handler, sleeps).post("/runs", json={})

    assert resp.status_code == status
    assert len(calls) == 1
    assert sleeps == []


def test_exhausted_retries_return_last_response() -> None:
    handler, calls = _scripted([503])
    sleeps: list[float] = []
    client = _client(handler, sleeps)

    resp = client.get("/runs")

    assert resp.status_code == 503
    assert len(calls) == 3
    assert client.stats["total_retries"] == 2
    assert client.stats["total_errors"] == 1


def test_retry_after_header_honoured_on_429() -> None:
    handler, calls = _scripted([429, 200], headers={"Retry-After": "7"})
    sleeps: list[float] = []

    resp = _client(handler, sleeps).get("/runs")

    assert resp.status_code == 200
    assert sleeps == [7.0]


def test_custom_retry_allowlist() -> None:
    handler, calls = _scripted([503])
    sleeps: list[float] = []

    resp = _client(handler, sleeps, retry_on={429}).get("/runs")

    assert resp.status_code == 503
    assert len(calls) == 1


def test_connection_errors_raise_upstream_unavailable() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    sleeps: list[float] = []

    with pytest.raises(UpstreamError) as excinfo:
        _client(handler, sleeps).get("/runs")

    assert excinfo.value.code == "UPSTREAM_UNAVAILABLE"
    assert excinfo.value.status_code == 504
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_timeout_recovers_on_next_attempt() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={})

    sleeps: list[float] = []

    assert _client(handler, sleeps).get("/runs").status_code == 200
    assert sleeps == [1.0]
