"""
בדיקות ל-Middleware - app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- RequestLoggingMiddleware: לוג בקשות ושגיאות
- Exception handlers: AppException ו-Exception גנרי
- ה-stack המלא דרך האפליקציה
"""
import json
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.exceptions import (
    AppException,
    AuthorizationError,
    ErrorCode,
    RideNotFoundError,
    ValidationError,
)
from app.core.logging import get_correlation_id
from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    app_exception_handler,
    generic_exception_handler,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _echo_correlation(request: Request) -> JSONResponse:
    """מחזיר את ה-correlation id כפי שהקוד שבתוך הבקשה רואה אותו"""
    return JSONResponse({"state": request.state.correlation_id, "context": get_correlation_id()})


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("שגיאת בדיקה")


def _build_app(*middlewares) -> Starlette:
    app = Starlette(
        routes=[
            Route("/test", _hello),
            Route("/echo", _echo_correlation),
            Route("/error", _error),
        ]
    )
    for middleware in middlewares:
        app.add_middleware(middleware)
    return app


def _request(path: str) -> AsyncMock:
    mock_request = AsyncMock(spec=Request)
    mock_request.url.path = path
    return mock_request


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        with TestClient(_build_app(CorrelationIdMiddleware)) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_preserves_incoming_correlation_id(self) -> None:
        with TestClient(_build_app(CorrelationIdMiddleware)) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "tg-update-77"})

        assert response.headers["x-correlation-id"] == "tg-update-77"

    @pytest.mark.unit
    def test_unique_per_request(self) -> None:
        with TestClient(_build_app(CorrelationIdMiddleware)) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]

        assert first != second

    @pytest.mark.unit
    def test_visible_inside_the_request(self) -> None:
        """הקוד שמטפל בבקשה (ולכן גם הלוגים שלו) רואה את אותו מזהה"""
        with TestClient(_build_app(CorrelationIdMiddleware)) as client:
            response = client.get("/echo", headers={"X-Correlation-ID": "abc12345"})

        assert response.json() == {"state": "abc12345", "context": "abc12345"}


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_passes_through(self) -> None:
        with TestClient(_build_app(RequestLoggingMiddleware)) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert response.text == "ok"

    @pytest.mark.unit
    def test_not_found_passes_through(self) -> None:
        with TestClient(_build_app(RequestLoggingMiddleware)) as client:
            assert client.get("/missing").status_code == 404

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        with TestClient(_build_app(RequestLoggingMiddleware), raise_server_exceptions=False) as client:
            response = client.get("/error")

        assert response.status_code == 500


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (RideNotFoundError("aB3dE5gH7jK"), 404, ErrorCode.RIDE_NOT_FOUND),
            (ValidationError("Invalid distance", field="distance"), 400, ErrorCode.VALIDATION_ERROR),
            (AuthorizationError("cancel", user_id=2, ride_id="x"), 403, ErrorCode.FORBIDDEN),
        ],
    )
    async def test_status_and_code(self, exc: AppException, status: int, code: ErrorCode) -> None:
        response = await app_exception_handler(_request("/api/rides"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == status
        body = json.loads(response.body)
        assert body["error"]["code"] == code.value
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_details_are_exposed(self) -> None:
        exc = ValidationError("Invalid distance", field="distance")

        response = await app_exception_handler(_request("/api/rides"), exc)

        assert json.loads(response.body)["error"]["details"] == {"field": "distance"}


class TestGenericExceptionHandler:

    @pytest.mark.unit
    async def test_returns_500(self) -> None:
        response = await generic_exception_handler(_request("/api/x"), RuntimeError("boom"))

        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_request("/api/x"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert ErrorCode.INTERNAL_ERROR.value in body


# ============================================================================
# Full stack
# ============================================================================


class TestFullStack:

    @pytest.mark.integration
    async def test_health_has_correlation_id(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers

    @pytest.mark.integration
    async def test_webhook_echoes_correlation_id(self, test_client) -> None:
        response = await test_client.post(
            "/api/telegram/webhook",
            json={"update_id": 1},
            headers={"X-Correlation-ID": "webhook-1"},
        )

        assert response.status_code == 200
        assert response.headers["x-correlation-id"] == "webhook-1"
