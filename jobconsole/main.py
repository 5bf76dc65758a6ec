import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.middleware.base import BaseHTTPMiddleware

from jobconsole.api import router as api_router
from jobconsole.core.env import Settings, load_settings
from jobconsole.proxy import NO_STORE, error_envelope

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "same-origin")
        response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=()")
        return response


class NoStoreMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if request.url.path.startswith(API_PREFIX):
            response.headers["Cache-Control"] = NO_STORE
        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start_time = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "API_REQUEST",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "request_id": request_id,
            },
        )
        return response


def _error_content(request: Request, code: str, message: str, details: dict | None = None) -> dict:
    request_id = getattr(request.state, "request_id", None)
    return jsonable_encoder(error_envelope(code, message, request_id, details))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=_error_content(
            request,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": exc.errors()},
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception during request.")
    return JSONResponse(
        status_code=500,
        content=_error_content(request, "INTERNAL_ERROR", "Unexpected server error"),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        code = detail.get("code") or "HTTP_ERROR"
        message = detail.get("message") or "Request failed"
        details = detail.get("details")
    else:
        code = "HTTP_ERROR"
        message = str(detail)
        details = None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(request, code, message, details),
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    app_env = os.getenv("APP_ENV", "development").lower()
    docs_enabled = app_env != "production"

    app = FastAPI(
        title="AlgoNext Job Console",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(NoStoreMiddleware)
    app.add_middleware(RequestContextMiddleware)

    cors_allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOW_ORIGINS", "").split(",")
        if origin.strip()
    ]
    if cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    def log_settings():
        logger.info(
            "Job console config: API_BASE_URL=%s PROXY_TIMEOUT_SEC=%s",
            settings.api_base_url,
            settings.proxy_timeout_sec,
        )

    @app.get("/health", include_in_schema=False)
    def health():
        return {
            "ok": True,
            "service": "algonext-job-console",
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(api_router, prefix=API_PREFIX)
    return app


app = create_app()
