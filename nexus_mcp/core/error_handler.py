"""
Error handling for the management API
"""

import traceback

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..mcp.external.errors import ProviderError

logger = structlog.get_logger(__name__)


STATUS_BY_CODE = {
    "not_found": 404,
    "unavailable": 503,
    "timeout": 504,
    "not_implemented": 501,
    "invalid_request": 400,
}


def status_for(error: ProviderError) -> int:
    return STATUS_BY_CODE.get(error.code, 500)


def setup_error_handlers(app: FastAPI) -> None:
    """Register exception handlers"""

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        status_code = status_for(exc)
        logger.warning(
            "provider_error_response",
            code=exc.code,
            message=exc.message,
            provider=exc.provider_id,
            path=request.url.path,
            method=request.method,
            status_code=status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "error": "Provider Error",
                "code": exc.code,
                "message": exc.message,
                "path": request.url.path,
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("http_exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTP Exception",
                "code": "http_error",
                "message": exc.detail,
                "path": request.url.path,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unexpected_error",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "code": "internal",
                "message": "An unexpected error occurred",
                "path": request.url.path,
            },
        )
