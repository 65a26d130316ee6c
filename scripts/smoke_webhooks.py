"""
Smoke tests for a deployed instance.

Runs lightweight HTTP checks against a running app instance:
- GET /health
- POST /api/webhooks/gateway signed with GATEWAY_SECRET_KEY (unhandled event, expects 200)
- POST /api/orders/webhook (legacy alias, same payload)
- POST /api/webhooks/gateway without a signature (expects 401)

The signed payload uses an event the service acknowledges without touching
any state, so the script is safe to run against production.
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime
from pathlib import Path

import httpx

# Allow running from any directory (e.g. `python scripts/smoke_webhooks.py` in a shell)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings  # noqa: E402
from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.services.gateway.paystack_provider import sign_payload  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _smoke_payload() -> dict:
    return {
        "event": "smoke.check",
        "data": {
            "reference": f"smoke-{int(datetime.utcnow().timestamp())}",
            "status": "success",
        },
    }


def _signed_request(payload: dict) -> tuple[bytes, dict[str, str]]:
    raw_body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        settings.GATEWAY_SIGNATURE_HEADER: sign_payload(raw_body, settings.GATEWAY_SECRET_KEY),
    }
    return raw_body, headers


def _check_status(resp: httpx.Response, expected_status: int | None = None, expected_family: int = 2) -> None:
    if expected_status is not None:
        ok = resp.status_code == expected_status
    else:
        ok = resp.status_code // 100 == expected_family
    if not ok:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="fleetpay-smoke")

    if not settings.GATEWAY_SECRET_KEY:
        raise SystemExit("GATEWAY_SECRET_KEY is required to sign smoke webhooks")

    base_url = _base_url()
    timeout = _timeout_seconds()

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        resp = client.get(health_url)
        _check_status(resp)

        for path in ("/api/webhooks/gateway", "/api/orders/webhook"):
            url = f"{base_url}{path}"
            raw_body, headers = _signed_request(_smoke_payload())
            logger.info("Posting signed gateway webhook", extra_data={"url": url})
            resp = client.post(url, content=raw_body, headers=headers)
            _check_status(resp)
            if resp.json().get("outcome") != "ignored":
                raise RuntimeError(f"Smoke event was not ignored by {url}: {resp.text[:500]}")

        unsigned_url = f"{base_url}/api/webhooks/gateway"
        logger.info("Posting unsigned gateway webhook", extra_data={"url": unsigned_url})
        resp = client.post(unsigned_url, json=_smoke_payload())
        _check_status(resp, expected_status=401)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
