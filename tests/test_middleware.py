"""
Tests for app/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation ID propagation
- RequestLoggingMiddleware: request logs with secrets masked
- SecurityHeadersMiddleware: nosniff always, CSP/HSTS outside DEBUG
- WebhookRateLimitMiddleware: per-IP sliding window on webhook paths
- Exception handlers: AppException and unexpected errors
"""
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    _mask_path_pii,
    _safe_query_params,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import AppException, ConflictError, ErrorCode


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("test failure")


def _conflict(request: Request) -> PlainTextResponse:
    raise ConflictError("Order status changed", error_code=ErrorCode.ORDER_STATUS_CHANGED)


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    app = Starlette(
        routes=[
            Route("/test", _hello),
            Route("/api/webhooks/gateway", _webhook, methods=["GET", "POST"]),
            Route("/error", _error),
            Route("/conflict", _conflict),
        ],
        exception_handlers={
            AppException: app_exception_handler,
            Exception: generic_exception_handler,
        },
    )
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# Masking
# ============================================================================


class TestMasking:
    """Account numbers and payment references stay out of request logs"""

    @pytest.mark.unit
    def test_masks_account_number_in_path(self) -> None:
        masked = _mask_path_pii("/api/banks/0123456789/resolve")
        assert "0123456789" not in masked
        assert "******6789" in masked

    @pytest.mark.unit
    def test_no_account_number_no_change(self) -> None:
        assert _mask_path_pii("/api/orders/42") == "/api/orders/42"

    @pytest.mark.unit
    def test_secret_query_params_masked(self) -> None:
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/api/orders/payment-callback",
            "query_string": b"orderId=7&reference=ORD-AB12CD34-1&trxref=ORD-AB12CD34-1",
            "headers": [],
        }
        params = _safe_query_params(Request(scope))

        assert params == {"orderId": "7", "reference": "***", "trxref": "***"}


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "my-correlation-id"})
            assert response.headers["x-correlation-id"] == "my-correlation-id"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_becomes_500(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")
            assert response.status_code == 500


# ============================================================================
# SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeaders:

    @pytest.mark.unit
    def test_production_headers(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert "upgrade-insecure-requests" in response.headers["content-security-policy"]
            assert "max-age=" in response.headers["strict-transport-security"]

    @pytest.mark.unit
    def test_debug_skips_csp_and_hsts(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    async def test_headers_on_full_app(self, test_client) -> None:
        response = await test_client.get("/health")
        assert response.headers.get("x-content-type-options") == "nosniff"


# ============================================================================
# WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(5):
                assert client.post("/api/webhooks/gateway").status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                client.post("/api/webhooks/gateway")
            response = client.post("/api/webhooks/gateway")

            assert response.status_code == 429
            assert response.headers["retry-after"] == "60"
            assert response.json()["error"]["code"] == ErrorCode.RATE_LIMITED.value

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_window_cleanup_drops_empty_ip(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=2, window_seconds=10)
        mw._requests["10.0.0.1"] = [100.0]

        mw._cleanup_window("10.0.0.1", now=200.0)

        assert "10.0.0.1" not in mw._requests


# ============================================================================
# Exception handlers
# ============================================================================


class TestExceptionHandlers:

    @pytest.mark.unit
    def test_app_exception_shape(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/conflict")

            assert response.status_code == 409
            body = response.json()
            assert body["error"]["code"] == ErrorCode.ORDER_STATUS_CHANGED.value
            assert body["error"]["message"] == "Order status changed"
            assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_unexpected_exception_hides_details(self) -> None:
        app = _build_app()
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")

            assert response.status_code == 500
            body = response.json()
            assert body["error"]["code"] == ErrorCode.INTERNAL_ERROR.value
            assert "test failure" not in response.text
