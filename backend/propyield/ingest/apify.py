"""Apify REST client: start actor runs, read run status, fetch dataset items."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from ..config import settings
from ..errors import UpstreamError
from ..http_client import ResilientClient

logger = logging.getLogger(__name__)

FULL_MODE = {"memory": 2048, "timeout": 300}
BASIC_MODE = {"memory": 512, "timeout": 120}

RUNNING_STATUSES = {"READY", "RUNNING"}
FAILED_STATUSES = {"FAILED", "ABORTED", "TIMED-OUT", "TIMED_OUT"}


@dataclass
class RunInfo:
    id: str
    status: str
    dataset_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RunInfo":
        data = payload.get("data") or {}
        if not data.get("id"):
            raise UpstreamError("Apify response missing run id", code="UPSTREAM_ERROR")
        return cls(
            id=data["id"],
            status=str(data.get("status") or "READY").upper(),
            dataset_id=data.get("defaultDatasetId"),
        )


def classify_error(resp: httpx.Response) -> UpstreamError:
    """Map a non-2xx Apify response onto a typed upstream error."""
    text = resp.text[:500]
    lowered = text.lower()
    if "memory" in lowered:
        return UpstreamError(f"Apify memory limit exceeded: {text}", code="MEMORY_LIMIT", status_code=402)
    if resp.status_code == 402 or "quota" in lowered or "usage limit" in lowered:
        return UpstreamError(f"Apify quota exceeded: {text}", code="QUOTA_EXCEEDED", status_code=402)
    if resp.status_code == 429:
        return UpstreamError("Apify rate limit reached", code="RATE_LIMITED", status_code=429)
    if resp.status_code in (401, 403):
        return UpstreamError("Apify rejected the API token", code="UPSTREAM_AUTH", status_code=502)
    return UpstreamError(
        f"Apify API error {resp.status_code}: {text}", code="UPSTREAM_ERROR", status_code=502
    )


class ApifyClient:
    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        token = token if token is not None else settings.apify_token
        kwargs: dict[str, Any] = {"transport": transport}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self._http = ResilientClient(
            base_url=(base_url or settings.apify_base_url).rstrip("/"),
            headers={"Authorization": f"Bearer {token}"} if token else {},
            **kwargs,
        )

    def _json(self, resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            raise classify_error(resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError("Apify returned invalid JSON", code="UPSTREAM_ERROR") from exc

    def start_run(
        self,
        actor_id: str,
        run_input: dict[str, Any],
        basic_mode: bool = False,
        webhook_url: str | None = None,
        source: str | None = None,
    ) -> RunInfo:
        limits = BASIC_MODE if basic_mode else FULL_MODE
        params: dict[str, Any] = dict(limits)
        if webhook_url:
            params["webhooks"] = _webhook_param(webhook_url, source or actor_id)
        resp = self._http.post(
            f"/acts/{actor_id.replace('/', '~')}/runs",
            params=params,
            json=run_input,
        )
        run = RunInfo.from_payload(self._json(resp))
        logger.info(
            "Apify run %s started for %s (%s mode)",
            run.id, actor_id, "basic" if basic_mode else "full",
        )
        return run

    def get_run(self, run_id: str) -> RunInfo:
        return RunInfo.from_payload(self._json(self._http.get(f"/actor-runs/{run_id}")))

    def fetch_items(self, dataset_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"format": "json", "clean": "true"}
        if limit:
            params["limit"] = limit
        items = self._json(self._http.get(f"/datasets/{dataset_id}/items", params=params))
        if not isinstance(items, list):
            raise UpstreamError("Apify dataset payload is not a list", code="UPSTREAM_ERROR")
        return [item for item in items if isinstance(item, dict)]

    def close(self) -> None:
        self._http.close()


def _webhook_param(url: str, source: str) -> str:
    """Ad-hoc webhook that posts the dataset id back when the run succeeds."""
    template = (
        '{"source": ' + json.dumps(source) + ', '
        '"runId": {{resource.id}}, "datasetId": {{resource.defaultDatasetId}}, '
        '"status": {{resource.status}}}'
    )
    webhooks = [{"eventTypes": ["ACTOR.RUN.SUCCEEDED"], "requestUrl": url, "payloadTemplate": template}]
    return base64.b64encode(json.dumps(webhooks).encode()).decode()
