"""
Error handlers that let a FastAPI host answer sessionguard failures
"""

import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessionguard.core.errors import AppError, ErrorCode
from sessionguard.logging_config import bind_request_context, clear_request_context

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def request_id_middleware(request: Request, call_next):
    """Tag the request, its log lines and its response with a request id"""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    clear_request_context()
    bind_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    """Translate an AppError into its JSON error envelope"""
    status_code = exc.http_status
    headers = None
    if exc.code == ErrorCode.UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}

    if status_code >= 500:
        logger.error(
            "app_error",
            code=exc.code.value,
            error_type=type(exc).__name__,
            path=request.url.path,
            request_id=getattr(request.state, "request_id", "unknown"),
        )
    else:
        logger.info(
            "app_error",
            code=exc.code.value,
            error_type=type(exc).__name__,
            path=request.url.path,
        )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.to_dict(),
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error("unhandled_exception",
                 error=str(exc),
                 error_type=type(exc).__name__,
                 path=request.url.path,
                 request_id=getattr(request.state, "request_id", "unknown"),
                 exc_info=exc)

    return JSONResponse(
        status_code=500,
        content={
            "error": {"code": ErrorCode.INTERNAL.value, "message": "An unexpected error occurred"},
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


def register_error_handlers(app: FastAPI, request_ids: bool = True) -> None:
    """Install the sessionguard handlers on a FastAPI application"""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    if request_ids:
        app.middleware("http")(request_id_middleware)
