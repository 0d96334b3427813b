"""
Resilient HTTP Client
======================
Thin wrapper over ``httpx.Client`` for third-party APIs:
- Exponential backoff with jitter, capped attempts and capped delay
- Retries only on an allowlist of status codes plus timeouts/connect errors
- Honours ``Retry-After`` on 429
- Call/retry telemetry
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Iterable

import httpx

from .config import settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ON = frozenset({429, 500, 502, 503, 504})


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """``min(base·2^attempt + jitter·base, max_delay)`` with jitter in [0, 1)."""
    return min(base_delay * (2 ** attempt) + rng() * base_delay, max_delay)


class ResilientClient:
    """
    HTTP client that retries transient failures.

    A response whose status is not in ``retry_on`` is returned immediately,
    success or not; the caller decides how to map it. When every attempt
    returned a retryable status, the last response is returned. Transport
    errors that survive every attempt raise ``UpstreamError``.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        timeout: float | None = None,
        retry_on: Iterable[int] = DEFAULT_RETRY_ON,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max(max_attempts or settings.http_max_attempts, 1)
        self.base_delay = settings.http_base_delay if base_delay is None else base_delay
        self.max_delay = settings.http_max_delay if max_delay is None else max_delay
        self.retry_on = frozenset(retry_on)
        self._sleep = sleep
        self._rng = rng
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout or settings.http_timeout,
            transport=transport,
        )

        # Telemetry
        self._total_calls = 0
        self._total_retries = 0
        self._total_errors = 0

    def _delay_for(self, attempt: int, response: httpx.Response | None) -> float:
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            if retry_after and retry_after.isdigit():
                return min(float(retry_after), self.max_delay)
        return backoff_delay(attempt, self.base_delay, self.max_delay, self._rng)

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self._total_calls += 1
        last_error: Exception | None = None

        for attempt in range(self.max_attempts):
            is_last = attempt == self.max_attempts - 1
            try:
                resp = self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                if is_last:
                    break
                delay = self._delay_for(attempt, None)
                logger.warning(
                    "%s %s: %s, retrying in %.1fs (attempt %d/%d)",
                    method, url, type(exc).__name__, delay, attempt + 1, self.max_attempts,
                )
                self._total_retries += 1
                self._sleep(delay)
                continue

            if resp.status_code not in self.retry_on or is_last:
                if resp.status_code >= 400:
                    self._total_errors += 1
                return resp

            delay = self._delay_for(attempt, resp)
            logger.warning(
                "%s %s returned %d, retrying in %.1fs (attempt %d/%d)",
                method, url, resp.status_code, delay, attempt + 1, self.max_attempts,
            )
            self._total_retries += 1
            self._sleep(delay)

        self._total_errors += 1
        raise UpstreamError(
            f"{method} {url} failed after {self.max_attempts} attempts: "
            f"{type(last_error).__name__ if last_error else 'unknown error'}",
            code="UPSTREAM_UNAVAILABLE",
            status_code=504,
        ) from last_error

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ResilientClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def stats(self) -> dict:
        return {
            "total_calls": self._total_calls,
            "total_retries": self._total_retries,
            "total_errors": self._total_errors,
            "max_attempts": self.max_attempts,
            "retry_on": sorted(self.retry_on),
        }
