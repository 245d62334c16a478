from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
import logging
import traceback

from optracker.errors import TrackerError

logger = logging.getLogger(__name__)

def add_error_handling_middleware(app: FastAPI):
    """Add error handling middleware to FastAPI app"""

    @app.exception_handler(TrackerError)
    async def tracker_exception_handler(request: Request, exc: TrackerError):
        """Map tracker errors to the standard error envelope"""
        if exc.http_status >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}")
        else:
            logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content={
                "code": exc.http_status,
                "rpc_code": int(exc.code),
                "error": type(exc).__name__,
                "message": exc.message,
                "hint": exc.hint,
                "retryable": exc.retryable
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with proper error format"""
        logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.detail,
                "hint": "Check the request parameters and try again",
                "retryable": exc.status_code >= 500
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "hint": "Please try again later or contact support",
                "retryable": True
            }
        )
