"""
Listing Ingestion Subsystem
============================
Scrape listing sites through Apify and load them into the listings table.

Modules:
- providers: per-site adapters normalizing scraped items to ListingRecord
- apify: REST client for actor runs and datasets
- pipeline: rate-limited start/poll/fetch/import with basic-mode fallback
- webhook: HMAC verification and payload parsing for run callbacks
"""

from . import apify, pipeline, providers, webhook

__all__ = [
    "apify",
    "pipeline",
    "providers",
    "webhook",
]
