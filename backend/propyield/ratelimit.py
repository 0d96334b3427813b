"""Fixed-window request counter stored in the ``rate_limits`` table."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from . import store
from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(int(self.reset_at - time.time()) + 1, 1)


def check(key: str, max_requests: int, window_seconds: int, now: float | None = None) -> RateLimitResult:
    """
    Count one attempt against ``key``.

    A new window opens on the first attempt after the previous window
    expired. Attempts beyond ``max_requests`` inside a window are rejected
    and not counted.
    """
    now = time.time() if now is None else now
    with store.get_conn() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT count, window_start FROM rate_limits WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO rate_limits (key, count, window_start) VALUES (?, 1, ?)",
                (key, now),
            )
            return RateLimitResult(True, max_requests - 1, now + window_seconds)
        if now - row["window_start"] >= window_seconds:
            conn.execute(
                "UPDATE rate_limits SET count = 1, window_start = ? WHERE key = ?",
                (now, key),
            )
            return RateLimitResult(True, max_requests - 1, now + window_seconds)
        reset_at = row["window_start"] + window_seconds
        if row["count"] >= max_requests:
            logger.warning("Rate limit hit for %s (%d/%d)", key, row["count"], max_requests)
            return RateLimitResult(False, 0, reset_at)
        conn.execute(
            "UPDATE rate_limits SET count = count + 1 WHERE key = ?", (key,)
        )
        return RateLimitResult(True, max_requests - row["count"] - 1, reset_at)


def enforce(key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
    result = check(key, max_requests, window_seconds)
    if not result.allowed:
        raise RateLimitExceeded(key, result.retry_after)
    return result
