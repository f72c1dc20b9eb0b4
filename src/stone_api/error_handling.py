"""Uniform error bodies and request ids.

Every error leaves the API as ``{error_code, message, detail, request_id}``
(plus ``details`` for structured validation output), and every response
carries ``X-Request-ID``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from http import HTTPStatus
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, OperationalError
from starlette.middleware.base import RequestResponseEndpoint
from starlette.responses import Response

from stone_api.modules.auth.errors import RetryableIdentityFault

logger = logging.getLogger("stone_api.errors")

REQUEST_ID_HEADER = "X-Request-ID"

_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "too_many_requests",
    503: "service_unavailable",
}


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return str(uuid4())


def error_code_for(status_code: int) -> str:
    code = _ERROR_CODES.get(status_code)
    if code is not None:
        return code
    if status_code >= 500:
        return "internal_error"
    return f"http_{status_code}"


def error_response(
    request: Request,
    status_code: int,
    detail: object,
    *,
    details: object | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    request_id = _request_id(request)
    body: dict[str, object] = {
        "error_code": error_code_for(status_code),
        "message": detail if isinstance(detail, str) else HTTPStatus(status_code).phrase,
        "detail": detail,
        "request_id": request_id,
    }
    if details is not None:
        body["details"] = details
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={**(headers or {}), REQUEST_ID_HEADER: request_id},
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.middleware("http")
    async def attach_request_id(request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = request.headers.get("x-request-id") or str(uuid4())
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if exc.detail is not None else HTTPStatus(exc.status_code).phrase
        return error_response(
            request,
            exc.status_code,
            detail,
            details=detail if isinstance(detail, (dict, list)) else None,
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(request, 422, "Validation failed", details=exc.errors())

    @app.exception_handler(RetryableIdentityFault)
    async def identity_unavailable_handler(
        request: Request, exc: RetryableIdentityFault
    ) -> JSONResponse:
        logger.warning(
            "identity_dependency_unavailable",
            extra={"error": type(exc).__name__, "request_id": _request_id(request)},
        )
        return error_response(
            request,
            503,
            "Sign-in is temporarily unavailable. Please retry.",
            headers={"Retry-After": str(exc.retry_after_s)},
        )

    @app.exception_handler(OperationalError)
    @app.exception_handler(DBAPIError)
    @app.exception_handler(OSError)
    async def database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "database_unavailable",
            extra={"error": type(exc).__name__, "request_id": _request_id(request)},
        )
        return error_response(request, 503, "Database unavailable")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            extra={"request_id": _request_id(request)},
        )
        return error_response(request, 500, "Internal server error")
