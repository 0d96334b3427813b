"""
PropYield — Ingestion API Routes
═════════════════════════════════
Endpoints:
  POST /api/v1/ingest            — scrape a provider URL (inline or queued)
  POST /api/v1/ingest/worker     — drain up to N queued jobs concurrently
  GET  /api/v1/ingest/jobs/{id}  — job status and event log
  POST /webhooks/apify           — signed run-finished callback
"""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import store
from ..auth import UserRecord, get_current_user
from ..config import settings
from ..ingest import webhook
from ..ingest.pipeline import (
    STATUS_FAILED,
    STATUS_RATE_LIMITED,
    IngestionPipeline,
    IngestRequest,
    IngestResult,
    run_worker,
)
from ..ingest.providers import detect_provider
from ..schemas import IngestRequestModel, IngestResponse, JobResponse, WorkerResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/ingest", tags=["ingest"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_ERROR_STATUS = {
    "RATE_LIMITED": 429,
    "QUOTA_EXCEEDED": 402,
    "MEMORY_LIMIT": 402,
    "MISSING_DATASET": 400,
    "POLL_TIMEOUT": 504,
    "UPSTREAM_UNAVAILABLE": 504,
    "INTERNAL": 500,
}


@lru_cache(maxsize=1)
def get_pipeline() -> IngestionPipeline:
    return IngestionPipeline()


def _respond(result: IngestResult) -> IngestResponse | JSONResponse:
    if result.status not in (STATUS_FAILED, STATUS_RATE_LIMITED):
        return IngestResponse(**result.to_dict())
    status_code = _ERROR_STATUS.get(result.error_code or "", 502)
    headers = {"Retry-After": str(result.retry_after)} if result.retry_after else None
    return JSONResponse(
        status_code=status_code,
        content={
            "error": result.error,
            "code": result.error_code,
            "job_id": result.job_id,
            "status": result.status,
        },
        headers=headers,
    )


@router.post("", response_model=IngestResponse)
async def ingest(
    body: IngestRequestModel,
    user: UserRecord = Depends(get_current_user),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Start a scrape for ``url`` and import the results."""
    provider = body.provider
    if not provider:
        adapter = detect_provider(body.url) if body.url else None
        if adapter is None:
            raise HTTPException(400, detail={"error": "provider is required", "code": "ERR_MISSING_PROVIDER"})
        provider = adapter.id
    if not body.url and not body.location:
        raise HTTPException(400, detail={"error": "url or location is required", "code": "ERR_MISSING_PARAMS"})

    request = IngestRequest(
        provider=provider,
        url=body.url,
        max_items=body.max_items,
        user_id=body.user_id or str(user.id),
        location=body.location,
    )
    if body.queue:
        job_id = await asyncio.to_thread(pipeline.enqueue, request)
        return JSONResponse(status_code=202, content={"job_id": job_id, "status": "queued", "provider": provider})

    result = await asyncio.to_thread(pipeline.run, request)
    return _respond(result)


@router.post("/worker", response_model=WorkerResponse)
async def worker(
    _user: UserRecord = Depends(get_current_user),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> WorkerResponse:
    results = await run_worker(pipeline, settings.ingest_worker_batch)
    return WorkerResponse(
        processed=len(results),
        results=[IngestResponse(**r.to_dict()) for r in results],
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
def job_status(job_id: str, _user: UserRecord = Depends(get_current_user)) -> JobResponse:
    job = store.get_ingest_job(job_id)
    if job is None:
        raise HTTPException(404, detail={"error": "Job not found", "code": "ERR_JOB_NOT_FOUND"})
    return JobResponse(job=job, events=store.list_ingest_events(job_id))


@webhook_router.post("/apify", response_model=IngestResponse)
async def apify_webhook(
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Import the dataset of a finished run. Body must be signed with the shared secret."""
    body = await request.body()
    webhook.verify_signature(
        settings.apify_webhook_secret, body, request.headers.get(webhook.SIGNATURE_HEADER)
    )
    payload = webhook.parse_payload(body)
    if not payload["source"]:
        raise HTTPException(400, detail={"error": "source is required", "code": "ERR_MISSING_SOURCE"})

    logger.info("Apify webhook: source=%s run=%s dataset=%s", payload["source"], payload["run_id"], payload["dataset_id"])
    result = await asyncio.to_thread(
        pipeline.import_dataset,
        payload["source"],
        payload["dataset_id"],
        payload["run_id"],
        payload["user_id"],
        payload["location"],
    )
    return _respond(result)
