from __future__ import annotations

import json

import pytest

from propyield.errors import SignatureError
from propyield.ingest.webhook import parse_payload, sign, verify_signature

SECRET = "apify-test-secret"
BODY = json.dumps({"source": "rightmove", "runId": "run-1", "datasetId": "ds-1"}).encode()


def test_valid_signature_accepted() -> None:
    verify_signature(SECRET, BODY, sign(SECRET, BODY))


def test_prefixed_signature_accepted() -> None:
    verify_signature(SECRET, BODY, f"sha256={sign(SECRET, BODY).upper()}")


def test_missing_signature_is_401() -> None:
    with pytest.raises(SignatureError) as excinfo:
        verify_signature(SECRET, BODY, None)

    assert excinfo.value.status_code == 401


@pytest.mark.parametrize(
    "header",
    [
        "0" * 64,
        sign("wrong-secret", BODY),
        "not-hex",
    ],
)
def test_mismatched_signature_is_403(header: str) -> None:
    with pytest.raises(SignatureError) as excinfo:
        verify_signature(SECRET, BODY, header)

    assert excinfo.value.status_code == 403


def test_body_tampering_detected() -> None:
    signature = sign(SECRET, BODY)

    with pytest.raises(SignatureError):
        verify_signature(SECRET, BODY + b" ", signature)


def test_unconfigured_secret_is_server_error() -> None:
    with pytest.raises(SignatureError) as excinfo:
        verify_signature("", BODY, sign(SECRET, BODY))

    assert excinfo.value.status_code == 500


def test_parse_payload_top_level_fields() -> None:
    payload = parse_payload(json.dumps({
        "source": "apify-zoopla",
        "runId": "run-9",
        "datasetId": "ds-9",
        "userId": 42,
        "location": "Leeds",
    }).encode())

    assert payload == {
        "run_id": "run-9",
        "dataset_id": "ds-9",
        "source": "apify-zoopla",
        "status": None,
        "user_id": "42",
        "location": "Leeds",
    }


def test_parse_payload_falls_back_to_resource() -> None:
    payload = parse_payload(json.dumps({
        "source": "rightmove",
        "resource": {"id": "run-2", "defaultDatasetId": "ds-2", "status": "SUCCEEDED"},
    }).encode())

    assert payload["run_id"] == "run-2"
    assert payload["dataset_id"] == "ds-2"
    assert payload["status"] == "SUCCEEDED"


def test_uninterpolated_template_values_are_dropped() -> None:
    payload = parse_payload(json.dumps({
        "source": "rightmove",
        "runId": "run-3",
        "datasetId": "{{resource.defaultDatasetId}}",
    }).encode())

    assert payload["dataset_id"] is None
    assert payload["run_id"] == "run-3"


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
def test_malformed_payload_rejected(body: bytes) -> None:
    with pytest.raises(ValueError):
        parse_payload(body)
