"""Structured error response middleware."""
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
from .correlation import get_correlation_id
from ..adapters.base import StoreError

log = structlog.get_logger()


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Provides structured error responses for exceptions escaping the routes."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except StoreError as exc:
            correlation_id = get_correlation_id()
            log.error(
                "store.unavailable",
                error=str(exc),
                error_type=exc.__class__.__name__,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=503,
                content={
                    "error": "StoreUnavailable",
                    "message": "Event store failed; the request was not applied and may be retried",
                    "correlation_id": correlation_id,
                    "path": str(request.url.path)
                }
            )
        except Exception as exc:
            correlation_id = get_correlation_id()
            log.error(
                "unhandled.exception",
                error=str(exc),
                error_type=exc.__class__.__name__,
                path=request.url.path,
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "correlation_id": correlation_id,
                    "path": str(request.url.path)
                }
            )
