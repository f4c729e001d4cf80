from fastapi import Request
from fastapi.responses import JSONResponse
import structlog
from taskflow_engine.services.exceptions import TaskflowError

logger = structlog.get_logger()


async def taskflow_exception_handler(request: Request, exc: TaskflowError):
    logger.error(
        "Taskflow exception",
        error=exc.message,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        path=request.url.path
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message}
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
