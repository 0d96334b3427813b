from __future__ import annotations

import json
import os
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor

BASE_URL = os.getenv("STRESS_BASE_URL", "http://localhost:8000")
USERNAME = os.getenv("STRESS_USER", "stress_tester")
PASSWORD = os.getenv("STRESS_PASSWORD", "StressTest1!")

DEAL = {
    "price": 200000,
    "monthly_rent": 1000,
    "assumptions": {"deposit_pct": 25, "apr": 5.5, "interest_only": True},
}


def post(path: str, payload: dict, token: str | None = None) -> tuple[int, dict]:
    data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    req = urllib.request.Request(f"{BASE_URL}{path}", data=data, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=20) as resp:
            return resp.status, json.loads(resp.read() or b"{}")
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read() or b"{}")


def get_token() -> str:
    status, body = post("/api/v1/auth/login", {"username": USERNAME, "password": PASSWORD})
    if status == 401:
        status, body = post("/api/v1/auth/signup", {
            "username": USERNAME,
            "email": f"{USERNAME}@example.com",
            "password": PASSWORD,
        })
    if "access_token" not in body:
        raise SystemExit(f"Could not authenticate ({status}): {body}")
    return body["access_token"]


def run_batch(path: str, payload: dict, token: str, count: int = 20, workers: int = 5) -> None:
    start = time.time()
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(lambda _: post(path, payload, token)[0], range(count)))
    duration = time.time() - start
    ok = sum(1 for r in results if r == 200)
    print(f"{path} -> {ok}/{count} ok in {duration:.2f}s")


def main() -> None:
    token = get_token()
    run_batch("/api/v1/underwriting/calculate", DEAL, token)
    run_batch("/api/v1/underwriting/scenario", {
        "deal": DEAL,
        "scenario": {"name": "Rate shock", "interest_rate_change_bps": 200},
    }, token)
    run_batch("/api/v1/underwriting/portfolio-scenarios", {
        "deals": [DEAL, {**DEAL, "price": 250000, "monthly_rent": 2000}],
        "use_presets": True,
        "save": False,
    }, token)
    run_batch("/api/v1/underwriting/strategy-sim", {
        "price": 200000,
        "monthly_rent": 1000,
        "strategy_key": "BRRR",
    }, token)
    run_batch("/api/v1/underwriting/reality", {
        "price": 200000,
        "monthly_rent": 1000,
        "current_epc": "E",
        "other_income": 45000,
    }, token)


if __name__ == "__main__":
    main()
