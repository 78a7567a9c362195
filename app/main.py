import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.modules.directory_sync.api.v1.scim import ScimError, scim_error_response
from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import BackofficeException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("app_starting", app_name=settings.APP_NAME)

    # Shared pool for all identity-provider calls
    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


backoffice_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for 'app' by default.
app: FastAPI = backoffice_app

__all__ = ["app", "backoffice_app", "lifespan"]


@backoffice_app.exception_handler(BackofficeException)
async def backoffice_exception_handler(
    request: Request, exc: BackofficeException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@backoffice_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        error_text = "Internal Server Error"
        message_text = "An unexpected internal error occurred"
    else:
        error_text = detail_text if isinstance(exc.detail, str) else "Error"
        message_text = detail_text

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error_text,
            "code": "HTTP_ERROR",
            "message": message_text,
        },
    )


@backoffice_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": "Unprocessable Entity",
            "code": "VALIDATION_ERROR",
            "message": "The request body or parameters are invalid.",
            "details": _sanitize_errors(exc.errors()),
        },
    )


@backoffice_app.exception_handler(ScimError)
async def scim_error_handler(request: Request, exc: ScimError) -> JSONResponse:
    """Return SCIM-compliant error responses for /scim/v2 endpoints."""
    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return scim_error_response(exc)


@backoffice_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Sanitized 500 for anything a handler let escape."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    backoffice_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

backoffice_app.add_middleware(RequestIDMiddleware)

register_api_routers(backoffice_app)
