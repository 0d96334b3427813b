from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


def _load_env() -> None:
    root_dir = Path(__file__).resolve().parents[2]
    backend_env = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(root_dir / ".env")
    load_dotenv(backend_env)


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_map(value: str | None, fallback: dict[str, str]) -> dict[str, str]:
    """Parse ``key:value,key:value`` pairs (product id to plan tier)."""
    if not value:
        return dict(fallback)
    pairs: dict[str, str] = {}
    for item in _parse_csv(value, []):
        key, _, mapped = item.partition(":")
        if key and mapped:
            pairs[key.strip()] = mapped.strip()
    return pairs


_load_env()

DEV_ENVIRONMENTS = {"dev", "development", "local"}


@dataclass
class Settings:
    app_name: str = os.getenv("APP_NAME", "PropYield Underwriting API")
    environment: str = os.getenv("ENV", "dev")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "info")
    cors_origins: list[str] = field(
        default_factory=lambda: _parse_csv(
            os.getenv("CORS_ORIGINS"),
            ["http://localhost:5173", "http://127.0.0.1:5173"],
        )
    )
    db_path: str = os.getenv("DB_PATH", "backend/data/propyield.db")
    event_log_path: str = os.getenv("EVENT_LOG_PATH", "backend/data/events.log")

    # --- Apify scraping API ---
    apify_token: str = os.getenv("APIFY_TOKEN", "")
    apify_base_url: str = os.getenv("APIFY_BASE_URL", "https://api.apify.com/v2")
    apify_webhook_secret: str = os.getenv("APIFY_WEBHOOK_SECRET", "")
    apify_webhook_url: str = os.getenv("APIFY_WEBHOOK_URL", "")

    # --- Ingestion ---
    ingest_poll_interval: float = float(os.getenv("INGEST_POLL_INTERVAL", "5"))
    ingest_max_polls: int = int(os.getenv("INGEST_MAX_POLLS", "20"))
    ingest_default_max_items: int = int(os.getenv("INGEST_DEFAULT_MAX_ITEMS", "50"))
    ingest_worker_batch: int = int(os.getenv("INGEST_WORKER_BATCH", "3"))
    ingest_rate_limit_key: str = os.getenv("INGEST_RATE_LIMIT_KEY", "apify_ingestion")
    ingest_rate_limit_max: int = int(os.getenv("INGEST_RATE_LIMIT_MAX", "10"))
    ingest_rate_limit_window: int = int(os.getenv("INGEST_RATE_LIMIT_WINDOW", "60"))

    # --- Outbound HTTP retries ---
    http_max_attempts: int = int(os.getenv("HTTP_MAX_ATTEMPTS", "3"))
    http_base_delay: float = float(os.getenv("HTTP_BASE_DELAY", "1.0"))
    http_max_delay: float = float(os.getenv("HTTP_MAX_DELAY", "60"))
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "30"))

    # --- Billing ---
    billing_webhook_secret: str = os.getenv("BILLING_WEBHOOK_SECRET", "")
    billing_tolerance_seconds: int = int(os.getenv("BILLING_TOLERANCE_SECONDS", "300"))
    billing_product_tiers: dict[str, str] = field(
        default_factory=lambda: _parse_map(
            os.getenv("BILLING_PRODUCT_TIERS"),
            {"prod_investor": "investor", "prod_pro": "pro"},
        )
    )

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in DEV_ENVIRONMENTS


settings = Settings()
