"""
Listing Ingestion Pipeline
===========================
start run -> poll -> fetch items -> normalize -> filter -> upsert

- Fixed-window rate limit on starting actor runs (webhook imports of a
  finished run are not counted)
- One relaxed "basic mode" retry when the full run is refused
  (quota, memory or rate limit)
- Bounded polling; a run that never finishes marks the job failed
- Worker drains a small batch of queued jobs concurrently
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .. import ratelimit, store
from ..config import settings
from ..errors import UpstreamError
from ..logging import log_event
from .apify import FAILED_STATUSES, ApifyClient, RunInfo
from .providers import ProviderAdapter, get_provider, is_valid, matches_location

logger = logging.getLogger(__name__)

BASIC_MODE_TRIGGERS = {"QUOTA_EXCEEDED", "MEMORY_LIMIT", "RATE_LIMITED"}

STATUS_SUCCEEDED = "succeeded"
STATUS_NO_ITEMS = "no_items"
STATUS_FAILED = "failed"
STATUS_RATE_LIMITED = "rate_limited"


@dataclass
class IngestRequest:
    provider: str
    url: str | None = None
    max_items: int | None = None
    user_id: str | None = None
    location: str | None = None


@dataclass
class IngestResult:
    job_id: str
    status: str
    provider: str
    items_found: int = 0
    items_valid: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_invalid: int = 0
    invalid_reasons: dict[str, int] = field(default_factory=dict)
    basic_mode: bool = False
    run_id: str | None = None
    dataset_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    retry_after: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _resolve_adapter(provider: str) -> ProviderAdapter:
    try:
        return get_provider(provider)
    except KeyError as exc:
        raise ValueError(f"Unsupported provider: {provider}") from exc


class IngestionPipeline:
    def __init__(
        self,
        client: ApifyClient | None = None,
        poll_interval: float | None = None,
        max_polls: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client or ApifyClient()
        self.poll_interval = settings.ingest_poll_interval if poll_interval is None else poll_interval
        self.max_polls = settings.ingest_max_polls if max_polls is None else max_polls
        self._sleep = sleep

    # ── Entry points ──────────────────────────────────────────────────────

    def run(self, request: IngestRequest) -> IngestResult:
        """Ingest synchronously: create a job and drive it to a terminal state."""
        adapter = _resolve_adapter(request.provider)
        job_id = store.create_ingest_job(
            adapter.id, request.url, request.location, request.max_items,
            request.user_id, status="running",
        )
        store.update_ingest_job(job_id, started_at=_now())
        return self._execute(job_id, adapter, request)

    def enqueue(self, request: IngestRequest) -> str:
        adapter = _resolve_adapter(request.provider)
        job_id = store.create_ingest_job(
            adapter.id, request.url, request.location, request.max_items, request.user_id,
        )
        store.add_ingest_event(job_id, "info", "Job queued", {"provider": adapter.id})
        return job_id

    def process_queued_job(self, job: dict[str, Any]) -> IngestResult:
        """Run a job row already claimed by ``store.claim_queued_jobs``."""
        request = IngestRequest(
            provider=job["provider"],
            url=job.get("url"),
            max_items=job.get("max_items"),
            user_id=job.get("user_id"),
            location=job.get("location"),
        )
        return self._execute(job["id"], _resolve_adapter(request.provider), request)

    def import_dataset(
        self,
        source: str,
        dataset_id: str | None = None,
        run_id: str | None = None,
        user_id: str | None = None,
        location: str | None = None,
    ) -> IngestResult:
        """Webhook path: the run already exists, only its dataset must be imported."""
        adapter = _resolve_adapter(source)
        job_id = store.create_ingest_job(adapter.id, None, location, None, user_id, status="running")
        store.update_ingest_job(job_id, started_at=_now(), run_id=run_id, dataset_id=dataset_id)
        result = IngestResult(job_id=job_id, status="running", provider=adapter.id, run_id=run_id)
        try:
            if not dataset_id:
                if not run_id:
                    raise UpstreamError(
                        "Webhook carried neither a dataset id nor a run id",
                        code="MISSING_DATASET", status_code=400,
                    )
                run = self.wait_for_run(self.client.get_run(run_id), job_id)
                dataset_id = run.dataset_id
                if not dataset_id:
                    raise UpstreamError("Run has no dataset", code="MISSING_DATASET", status_code=502)
            result.dataset_id = dataset_id
            items = self.client.fetch_items(dataset_id)
            return self._import(result, adapter, items, user_id, location)
        except UpstreamError as exc:
            return self._fail(result, exc)
        except Exception as exc:
            self._fail(result, UpstreamError(str(exc), code="INTERNAL", status_code=500))
            raise

    # ── Stages ────────────────────────────────────────────────────────────

    def _execute(self, job_id: str, adapter: ProviderAdapter, request: IngestRequest) -> IngestResult:
        result = IngestResult(job_id=job_id, status="running", provider=adapter.id)

        limit = ratelimit.check(
            settings.ingest_rate_limit_key,
            settings.ingest_rate_limit_max,
            settings.ingest_rate_limit_window,
        )
        if not limit.allowed:
            result.status = STATUS_RATE_LIMITED
            result.error = "Ingestion rate limit exceeded"
            result.error_code = "RATE_LIMITED"
            result.retry_after = limit.retry_after
            self._finish(result)
            return result

        max_items = request.max_items or settings.ingest_default_max_items
        try:
            run, result.basic_mode = self._start(adapter, request.url, max_items, job_id)
            result.run_id = run.id
            store.update_ingest_job(job_id, run_id=run.id, basic_mode=int(result.basic_mode))

            run = self.wait_for_run(run, job_id)
            if not run.dataset_id:
                raise UpstreamError("Run finished without a dataset", code="MISSING_DATASET")
            result.dataset_id = run.dataset_id
            items = self.client.fetch_items(run.dataset_id, limit=max_items)
            return self._import(result, adapter, items, request.user_id, request.location)
        except UpstreamError as exc:
            return self._fail(result, exc)
        except Exception as exc:
            self._fail(result, UpstreamError(str(exc), code="INTERNAL", status_code=500))
            raise

    def _start(
        self, adapter: ProviderAdapter, url: str | None, max_items: int, job_id: str
    ) -> tuple[RunInfo, bool]:
        callback = {"webhook_url": settings.apify_webhook_url or None, "source": adapter.id}
        try:
            run_input = adapter.build_input(url, max_items)
            return self.client.start_run(adapter.actor_id, run_input, **callback), False
        except UpstreamError as exc:
            if exc.code not in BASIC_MODE_TRIGGERS:
                raise
            logger.warning("Job %s: full run refused (%s), retrying in basic mode", job_id, exc.code)
            store.add_ingest_event(job_id, "warning", "Retrying in basic mode", {"code": exc.code})
        run_input = adapter.build_input(url, max_items, basic_mode=True)
        return self.client.start_run(adapter.actor_id, run_input, basic_mode=True, **callback), True

    def wait_for_run(self, run: RunInfo, job_id: str | None = None) -> RunInfo:
        """Poll every ``poll_interval`` seconds, at most ``max_polls`` times."""
        for attempt in range(self.max_polls + 1):
            if run.status == "SUCCEEDED":
                return run
            if run.status in FAILED_STATUSES:
                raise UpstreamError(
                    f"Apify run {run.id} finished with status {run.status}",
                    code="RUN_FAILED", status_code=502,
                )
            if attempt == self.max_polls:
                break
            self._sleep(self.poll_interval)
            run = self.client.get_run(run.id)
            logger.debug("Job %s: run %s is %s (poll %d/%d)", job_id, run.id, run.status, attempt + 1, self.max_polls)
        raise UpstreamError(
            f"Apify run {run.id} did not finish after {self.max_polls} polls",
            code="POLL_TIMEOUT", status_code=504,
        )

    def _import(
        self,
        result: IngestResult,
        adapter: ProviderAdapter,
        items: list[dict[str, Any]],
        user_id: str | None,
        location: str | None,
    ) -> IngestResult:
        result.items_found = len(items)
        reasons: Counter[str] = Counter()
        rows: dict[str, dict[str, Any]] = {}

        for item in items:
            try:
                record = adapter.normalize(item, user_id=user_id)
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("Job %s: skipping malformed %s item: %s", result.job_id, adapter.id, exc)
                reasons["Malformed item"] += 1
                continue
            valid, reason = is_valid(record)
            if valid and not matches_location(record, location):
                valid, reason = False, "Outside requested location"
            if not valid:
                reasons[reason or "Invalid"] += 1
                continue
            rows[record.source_listing_id] = record.to_row()

        result.items_invalid = sum(reasons.values())
        result.invalid_reasons = dict(reasons)
        result.items_valid = len(rows)

        if not rows:
            result.status = STATUS_NO_ITEMS
            self._finish(result)
            return result

        result.items_inserted, result.items_updated = store.upsert_listings(rows.values())
        result.status = STATUS_SUCCEEDED
        self._finish(result)
        return result

    def _fail(self, result: IngestResult, exc: UpstreamError) -> IngestResult:
        logger.error("Ingest job %s failed: [%s] %s", result.job_id, exc.code, exc.message)
        result.status = STATUS_FAILED
        result.error = exc.message
        result.error_code = exc.code
        self._finish(result)
        return result

    def _finish(self, result: IngestResult) -> None:
        store.update_ingest_job(
            result.job_id,
            status=result.status,
            run_id=result.run_id,
            dataset_id=result.dataset_id,
            basic_mode=int(result.basic_mode),
            items_found=result.items_found,
            items_inserted=result.items_inserted,
            items_updated=result.items_updated,
            items_invalid=result.items_invalid,
            error=result.error,
            error_code=result.error_code,
            finished_at=_now(),
        )
        level = "error" if result.status == STATUS_FAILED else "info"
        store.add_ingest_event(
            result.job_id,
            level,
            f"Job {result.status}",
            {
                "found": result.items_found,
                "inserted": result.items_inserted,
                "updated": result.items_updated,
                "invalid": result.invalid_reasons,
                "error_code": result.error_code,
            },
        )
        log_event("ingest_job_finished", result.to_dict())
        logger.info(
            "Ingest job %s (%s): %s found=%d inserted=%d updated=%d invalid=%d",
            result.job_id, result.provider, result.status, result.items_found,
            result.items_inserted, result.items_updated, result.items_invalid,
        )


# ── Worker ────────────────────────────────────────────────────────────────


async def run_worker(pipeline: IngestionPipeline, batch_size: int | None = None) -> list[IngestResult]:
    """
    Claim up to ``batch_size`` queued jobs and process them concurrently.
    A job that raises is recorded as failed without affecting the others.
    """
    jobs = await asyncio.to_thread(store.claim_queued_jobs, batch_size or settings.ingest_worker_batch)
    if not jobs:
        return []
    outcomes = await asyncio.gather(
        *(asyncio.to_thread(pipeline.process_queued_job, job) for job in jobs),
        return_exceptions=True,
    )
    results: list[IngestResult] = []
    for job, outcome in zip(jobs, outcomes):
        if isinstance(outcome, BaseException):
            logger.error("Worker job %s raised: %s", job["id"], outcome, exc_info=outcome)
            await asyncio.to_thread(
                store.update_ingest_job, job["id"],
                status=STATUS_FAILED, error=str(outcome), error_code="INTERNAL", finished_at=_now(),
            )
            results.append(IngestResult(
                job_id=job["id"],
                status=STATUS_FAILED,
                provider=job["provider"],
                error=str(outcome),
                error_code="INTERNAL",
            ))
        else:
            results.append(outcome)
    return results
