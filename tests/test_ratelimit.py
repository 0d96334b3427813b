from __future__ import annotations

import pytest

from propyield import ratelimit, store
from propyield.errors import RateLimitExceeded


def test_window_allows_max_then_rejects() -> None:
    results = [ratelimit.check("apify_ingestion", 3, 60, now=1_000.0 + i) for i in range(3)]

    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    blocked = ratelimit.check("apify_ingestion", 3, 60, now=1_010.0)
    assert not blocked.allowed
    assert blocked.remaining == 0
    assert blocked.reset_at == pytest.approx(1_060.0)


def test_rejected_attempts_are_not_counted() -> None:
    for i in range(5):
        ratelimit.check("k", 2, 60, now=1_000.0 + i)

    with store.get_conn() as conn:
        row = conn.execute("SELECT count FROM rate_limits WHERE key = 'k'").fetchone()
    assert row["count"] == 2


def test_window_resets_after_expiry() -> None:
    ratelimit.check("k", 1, 60, now=1_000.0)
    assert not ratelimit.check("k", 1, 60, now=1_059.0).allowed

    fresh = ratelimit.check("k", 1, 60, now=1_060.0)

    assert fresh.allowed
    assert fresh.reset_at == pytest.approx(1_120.0)


def test_keys_are_independent() -> None:
    ratelimit.check("a", 1, 60, now=1_000.0)

    assert not ratelimit.check("a", 1, 60, now=1_001.0).allowed
    assert ratelimit.check("b", 1, 60, now=1_001.0).allowed


def test_enforce_raises_with_retry_after() -> None:
    ratelimit.enforce("login:1.2.3.4", 1, 300)

    with pytest.raises(RateLimitExceeded) as excinfo:
        ratelimit.enforce("login:1.2.3.4", 1, 300)

    assert excinfo.value.key == "login:1.2.3.4"
    assert 1 <= excinfo.value.retry_after <= 301
