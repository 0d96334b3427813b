"""
PropYield — SQLite persistence layer
=====================================
Features:
  • Single WAL-mode SQLite database shared by every module
  • Listings de-duplicated on (source, source_listing_id) via UPSERT
  • Ingestion job + event tables for the scraper pipeline
  • Scenario runs, subscriptions and webhook idempotency records
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Iterable

from .config import settings

logger = logging.getLogger(__name__)

DB_PATH = Path(settings.db_path)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        username          TEXT    UNIQUE NOT NULL,
        email             TEXT    UNIQUE NOT NULL,
        password          TEXT    NOT NULL,
        full_name         TEXT    DEFAULT '',
        role              TEXT    DEFAULT 'user',
        subscription_tier TEXT    DEFAULT 'free',
        is_active         INTEGER DEFAULT 1,
        created_at        TEXT    DEFAULT (datetime('now')),
        last_login        TEXT
    );
    CREATE TABLE IF NOT EXISTS token_blacklist (
        jti         TEXT    PRIMARY KEY,
        expires_at  TEXT    NOT NULL
    );
    CREATE TABLE IF NOT EXISTS rate_limits (
        key          TEXT    PRIMARY KEY,
        count        INTEGER DEFAULT 0,
        window_start REAL    NOT NULL
    );
    CREATE TABLE IF NOT EXISTS listings (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        source            TEXT    NOT NULL,
        source_listing_id TEXT    NOT NULL,
        property_address  TEXT    NOT NULL,
        postcode          TEXT,
        city              TEXT,
        region            TEXT,
        property_type     TEXT,
        price             REAL    NOT NULL,
        currency          TEXT    DEFAULT 'GBP',
        bedrooms          INTEGER,
        bathrooms         INTEGER,
        image_url         TEXT,
        images            TEXT    DEFAULT '[]',
        listing_url       TEXT,
        location_lat      REAL,
        location_lng      REAL,
        estimated_rent    REAL,
        yield_percentage  REAL,
        roi_percentage    REAL,
        cash_flow_monthly REAL,
        investment_score  TEXT,
        is_active         INTEGER DEFAULT 1,
        user_id           TEXT,
        created_at        TEXT    DEFAULT (datetime('now')),
        updated_at        TEXT    DEFAULT (datetime('now')),
        UNIQUE (source, source_listing_id)
    );
    CREATE TABLE IF NOT EXISTS listing_metrics (
        listing_id  INTEGER PRIMARY KEY REFERENCES listings(id) ON DELETE CASCADE,
        assumptions TEXT    NOT NULL,
        kpis        TEXT    NOT NULL,
        updated_at  TEXT    DEFAULT (datetime('now'))
    );
    CREATE TABLE IF NOT EXISTS ingest_jobs (
        id             TEXT    PRIMARY KEY,
        provider       TEXT    NOT NULL,
        url            TEXT,
        location       TEXT,
        max_items      INTEGER,
        user_id        TEXT,
        status         TEXT    NOT NULL DEFAULT 'queued',
        run_id         TEXT,
        dataset_id     TEXT,
        basic_mode     INTEGER DEFAULT 0,
        items_found    INTEGER DEFAULT 0,
        items_inserted INTEGER DEFAULT 0,
        items_updated  INTEGER DEFAULT 0,
        items_invalid  INTEGER DEFAULT 0,
        error          TEXT,
        error_code     TEXT,
        created_at     TEXT    DEFAULT (datetime('now')),
        started_at     TEXT,
        finished_at    TEXT
    );
    CREATE TABLE IF NOT EXISTS ingest_events (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id     TEXT    NOT NULL,
        level      TEXT    NOT NULL,
        message    TEXT    NOT NULL,
        payload    TEXT    DEFAULT '{}',
        created_at TEXT    DEFAULT (datetime('now'))
    );
    CREATE TABLE IF NOT EXISTS scenario_runs (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id    INTEGER,
        name       TEXT    NOT NULL,
        parameters TEXT    NOT NULL,
        result     TEXT    NOT NULL,
        created_at TEXT    DEFAULT (datetime('now'))
    );
    CREATE TABLE IF NOT EXISTS subscriptions (
        customer_id        TEXT    PRIMARY KEY,
        user_email         TEXT,
        subscription_id    TEXT,
        product_id         TEXT,
        tier               TEXT    DEFAULT 'free',
        status             TEXT    DEFAULT 'inactive',
        current_period_end INTEGER,
        updated_at         TEXT    DEFAULT (datetime('now'))
    );
    CREATE TABLE IF NOT EXISTS webhook_events (
        event_id     TEXT    PRIMARY KEY,
        event_type   TEXT    NOT NULL,
        processed_at TEXT    DEFAULT (datetime('now'))
    );
"""


def init_db() -> None:
    with _get_conn() as conn:
        conn.executescript(_SCHEMA)
    logger.info("Database ready at %s", DB_PATH)


@contextmanager
def _get_conn() -> Generator[sqlite3.Connection, None, None]:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=5)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


get_conn = _get_conn


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

_LISTING_COLUMNS = (
    "source", "source_listing_id", "property_address", "postcode", "city",
    "region", "property_type", "price", "currency", "bedrooms", "bathrooms",
    "image_url", "images", "listing_url", "location_lat", "location_lng",
    "estimated_rent", "yield_percentage", "roi_percentage",
    "cash_flow_monthly", "investment_score", "user_id",
)
_UPSERT_SQL = (
    f"INSERT INTO listings ({', '.join(_LISTING_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _LISTING_COLUMNS)}) "
    "ON CONFLICT(source, source_listing_id) DO UPDATE SET "
    + ", ".join(
        f"{col} = excluded.{col}"
        for col in _LISTING_COLUMNS
        if col not in ("source", "source_listing_id", "user_id")
    )
    + ", is_active = 1, updated_at = datetime('now')"
)


def upsert_listings(rows: Iterable[dict[str, Any]]) -> tuple[int, int]:
    """Bulk upsert listing rows. Returns ``(inserted, updated)``."""
    rows = list(rows)
    if not rows:
        return 0, 0
    inserted = updated = 0
    with _get_conn() as conn:
        conn.execute("BEGIN IMMEDIATE")
        for row in rows:
            exists = conn.execute(
                "SELECT 1 FROM listings WHERE source = ? AND source_listing_id = ?",
                (row["source"], row["source_listing_id"]),
            ).fetchone()
            values = []
            for col in _LISTING_COLUMNS:
                value = row.get(col)
                if col == "images":
                    value = json.dumps(value or [])
                values.append(value)
            conn.execute(_UPSERT_SQL, values)
            if exists:
                updated += 1
            else:
                inserted += 1
    return inserted, updated


def _listing_from_row(row: sqlite3.Row) -> dict[str, Any]:
    listing = dict(row)
    listing["images"] = json.loads(listing.get("images") or "[]")
    listing["is_active"] = bool(listing.get("is_active"))
    return listing


def get_listing(listing_id: int) -> dict[str, Any] | None:
    with _get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM listings WHERE id = ?", (listing_id,)
        ).fetchone()
        if row is None:
            return None
        listing = _listing_from_row(row)
        metrics = conn.execute(
            "SELECT assumptions, kpis, updated_at FROM listing_metrics WHERE listing_id = ?",
            (listing_id,),
        ).fetchone()
    listing["metrics"] = (
        {
            "assumptions": json.loads(metrics["assumptions"]),
            "kpis": json.loads(metrics["kpis"]),
            "updated_at": metrics["updated_at"],
        }
        if metrics
        else None
    )
    return listing


def list_listings(
    source: str | None = None,
    city: str | None = None,
    min_yield: float | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    clauses = ["is_active = 1"]
    params: list[Any] = []
    if source:
        clauses.append("source = ?")
        params.append(source)
    if city:
        clauses.append("LOWER(city) = ?")
        params.append(city.lower())
    if min_yield is not None:
        clauses.append("yield_percentage >= ?")
        params.append(min_yield)
    params.extend([limit, offset])
    with _get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM listings WHERE {' AND '.join(clauses)} "
            "ORDER BY yield_percentage DESC, id DESC LIMIT ? OFFSET ?",
            params,
        ).fetchall()
    return [_listing_from_row(r) for r in rows]


def save_listing_metrics(listing_id: int, assumptions: dict, kpis: dict) -> None:
    with _get_conn() as conn:
        conn.execute(
            "INSERT INTO listing_metrics (listing_id, assumptions, kpis, updated_at) "
            "VALUES (?, ?, ?, datetime('now')) "
            "ON CONFLICT(listing_id) DO UPDATE SET assumptions = excluded.assumptions, "
            "kpis = excluded.kpis, updated_at = excluded.updated_at",
            (listing_id, json.dumps(assumptions), json.dumps(kpis)),
        )


# ---------------------------------------------------------------------------
# Ingestion jobs
# ---------------------------------------------------------------------------

def create_ingest_job(
    provider: str,
    url: str | None,
    location: str | None = None,
    max_items: int | None = None,
    user_id: str | None = None,
    status: str = "queued",
) -> str:
    job_id = str(uuid.uuid4())
    with _get_conn() as conn:
        conn.execute(
            "INSERT INTO ingest_jobs (id, provider, url, location, max_items, user_id, status) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (job_id, provider, url, location, max_items, user_id, status),
        )
    return job_id


def update_ingest_job(job_id: str, **fields: Any) -> None:
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    with _get_conn() as conn:
        conn.execute(
            f"UPDATE ingest_jobs SET {assignments} WHERE id = ?",
            (*fields.values(), job_id),
        )


def get_ingest_job(job_id: str) -> dict[str, Any] | None:
    with _get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM ingest_jobs WHERE id = ?", (job_id,)
        ).fetchone()
    return dict(row) if row else None


def claim_queued_jobs(limit: int) -> list[dict[str, Any]]:
    """Move up to ``limit`` of the oldest queued jobs to ``running``."""
    with _get_conn() as conn:
        conn.execute("BEGIN IMMEDIATE")
        rows = conn.execute(
            "SELECT * FROM ingest_jobs WHERE status = 'queued' "
            "ORDER BY created_at, rowid LIMIT ?",
            (limit,),
        ).fetchall()
        for row in rows:
            conn.execute(
                "UPDATE ingest_jobs SET status = 'running', started_at = datetime('now') "
                "WHERE id = ? AND status = 'queued'",
                (row["id"],),
            )
    return [dict(r) for r in rows]


def add_ingest_event(job_id: str, level: str, message: str, payload: dict | None = None) -> None:
    with _get_conn() as conn:
        conn.execute(
            "INSERT INTO ingest_events (job_id, level, message, payload) VALUES (?, ?, ?, ?)",
            (job_id, level, message, json.dumps(payload or {})),
        )


def list_ingest_events(job_id: str) -> list[dict[str, Any]]:
    with _get_conn() as conn:
        rows = conn.execute(
            "SELECT level, message, payload, created_at FROM ingest_events "
            "WHERE job_id = ? ORDER BY id",
            (job_id,),
        ).fetchall()
    return [
        {**dict(r), "payload": json.loads(r["payload"] or "{}")}
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Scenario runs
# ---------------------------------------------------------------------------

def save_scenario_run(user_id: int | None, name: str, parameters: dict, result: dict) -> int:
    with _get_conn() as conn:
        cursor = conn.execute(
            "INSERT INTO scenario_runs (user_id, name, parameters, result) VALUES (?, ?, ?, ?)",
            (user_id, name, json.dumps(parameters), json.dumps(result)),
        )
        return int(cursor.lastrowid)
