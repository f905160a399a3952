"""FastAPI application for permit case builds.

Every error response uses the envelope ``{code, message, details?}``.
Unexpected 500s carry the exception type and traceback in ``details``
outside production only.
"""

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from permit_expediter import __version__
from permit_expediter.api import dependencies
from permit_expediter.api.routers import permits, system
from permit_expediter.errors import ErrorCode, PermitBuildError

logger = logging.getLogger(__name__)

HTTP_STATUS_CODES = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
}


def _envelope(
    status_code: int, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    body: Dict[str, Any] = {"code": code.value, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    response = _envelope(exc.status_code, code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return _envelope(400, ErrorCode.INVALID_REQUEST, "Invalid request payload", {"errors": errors})


async def handle_build_error(request: Request, exc: PermitBuildError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"Permit build failed: {exc.code.value}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_envelope())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    details = None
    if not dependencies.get_settings().is_production:
        details = {
            "type": type(exc).__name__,
            "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
        }
    return _envelope(500, ErrorCode.INTERNAL_ERROR, str(exc) or "Internal error", details)


def create_app() -> FastAPI:
    """Create the API application with routers and error handlers."""
    app = FastAPI(
        title="Permit Expediter API",
        description="Builds roofing permit cases from job, property and product data",
        version=__version__,
    )
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(PermitBuildError, handle_build_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(system.router)
    app.include_router(permits.router)
    return app


app = create_app()
