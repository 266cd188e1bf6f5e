"""HTTP middleware and exception handler wiring for FastAPI apps."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authlife.api.contracts import ApiErrorResponse
from authlife.api.errors import ApiErrorCode, to_error_payload
from authlife.auth.errors import ConcurrentUpdateError, PrincipalExistsError, PrincipalNotFoundError
from authlife.core.config import SecurityConfig
from authlife.core.logging import set_correlation_id

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
}


def _error_response(status_code: int, error_code: ApiErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiErrorResponse(error_code=error_code, message=message).model_dump(),
    )


def register_http_middleware(app: FastAPI, *, security: SecurityConfig, logger: Any) -> None:
    """Attach CORS, body size limit and request logging middleware."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def request_size_limit_middleware(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                parsed_length = int(content_length)
            except ValueError:
                parsed_length = 0
            if parsed_length > security.request_max_bytes:
                return _error_response(
                    413,
                    ApiErrorCode.REQUEST_TOO_LARGE,
                    f"Request size exceeds configured limit ({security.request_max_bytes} bytes).",
                )
        return await call_next(request)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        correlation_id = (
            request.headers.get("x-request-id")
            or request.headers.get("x-correlation-id")
            or uuid.uuid4().hex
        )
        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        logger.info(
            "request_completed",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
            },
        )
        return response


def register_exception_handlers(app: FastAPI, *, logger: Any) -> None:
    """Attach API exception handlers that return stable error contracts."""

    @app.exception_handler(HTTPException)
    async def handle_http_exception(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        payload = to_error_payload(exc.detail, exc.status_code)
        logger.warning(
            "http_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": exc.status_code,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=ApiErrorResponse(**payload).model_dump(),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        logger.warning(
            "validation_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": 422,
            },
        )
        messages = [str(error.get("msg", "")) for error in exc.errors()]
        return _error_response(
            422, ApiErrorCode.VALIDATION_ERROR, "; ".join(filter(None, messages)) or "Invalid request"
        )

    @app.exception_handler(PrincipalExistsError)
    async def handle_principal_exists(request: Request, exc: PrincipalExistsError) -> JSONResponse:
        logger.info("principal_exists", extra={"path": request.url.path, "status_code": 409})
        return _error_response(409, ApiErrorCode.AUTH_PRINCIPAL_EXISTS, "Login key is already registered")

    @app.exception_handler(PrincipalNotFoundError)
    async def handle_principal_not_found(
        request: Request, exc: PrincipalNotFoundError
    ) -> JSONResponse:
        return _error_response(404, ApiErrorCode.PRINCIPAL_NOT_FOUND, "Principal not found")

    @app.exception_handler(ConcurrentUpdateError)
    async def handle_concurrent_update(
        request: Request, exc: ConcurrentUpdateError
    ) -> JSONResponse:
        logger.warning("principal_write_conflict", extra={"path": request.url.path, "status_code": 409})
        return _error_response(409, ApiErrorCode.CONCURRENT_UPDATE, "Concurrent update, retry the request")

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.exception(
            "unexpected_exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": 500,
            },
        )
        return _error_response(500, ApiErrorCode.INTERNAL_SERVER_ERROR, "Internal server error")
