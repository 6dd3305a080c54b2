"""Request logging and body size middleware"""

import time

from fastapi import Request
from fastapi.responses import JSONResponse

from megabridge.utils.logger import get_logger

logger = get_logger("http")


async def request_logging_middleware(request: Request, call_next):
    """Log every request with method, path, status and duration"""
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"{request.method} {request.url.path}",
            status=status_code,
            durationMs=duration_ms,
        )


async def body_size_limit_middleware(request: Request, call_next):
    """Reject requests whose declared body exceeds the configured limit"""
    max_bytes = request.app.state.settings.request_body_max_bytes
    content_length = request.headers.get("content-length")

    if content_length is not None:
        try:
            declared = int(content_length)
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid Content-Length header"})
        if declared > max_bytes:
            logger.warning("Request body too large", path=request.url.path, size=declared, limit=max_bytes)
            return JSONResponse(status_code=413, content={"error": "Request body too large"})

    return await call_next(request)
