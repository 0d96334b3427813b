"""HMAC-SHA256 verification of Apify webhook deliveries."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from ..errors import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-apify-signature"
_UNRESOLVED = ("{{", "}}")


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, header: str | None) -> None:
    """
    Check ``header`` against the HMAC of the raw request body.

    Accepts a bare hex digest or ``sha256=<hex>``. Raises ``SignatureError``
    with 401 when the header is missing and 403 when it does not match.
    """
    if not secret:
        raise SignatureError("Webhook secret is not configured", status_code=500)
    if not header:
        raise SignatureError("Missing webhook signature", status_code=401)
    provided = header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(sign(secret, body).lower(), provided.lower()):
        logger.warning("Rejected Apify webhook with invalid signature")
        raise SignatureError("Invalid webhook signature", status_code=403)


def parse_payload(body: bytes) -> dict[str, Any]:
    """
    Decode the webhook body into ``run_id``, ``dataset_id``, ``source``,
    ``status`` and ``user_id``. Template placeholders Apify failed to
    interpolate are treated as missing.
    """
    try:
        data = json.loads(body or b"{}")
    except ValueError as exc:
        raise ValueError("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValueError("Webhook body must be a JSON object")

    resource = data.get("resource") if isinstance(data.get("resource"), dict) else {}

    def clean(value: Any) -> str | None:
        if value in (None, ""):
            return None
        text = str(value)
        if text.startswith(_UNRESOLVED[0]) and text.endswith(_UNRESOLVED[1]):
            return None
        return text

    return {
        "run_id": clean(data.get("runId") or resource.get("id")),
        "dataset_id": clean(data.get("datasetId") or resource.get("defaultDatasetId")),
        "source": clean(data.get("source")),
        "status": clean(data.get("status") or resource.get("status")),
        "user_id": clean(data.get("userId")),
        "location": clean(data.get("location")),
    }
