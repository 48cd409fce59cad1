import time
import uuid
import logging
from fastapi import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def logging_middleware(request: Request, call_next):
    # Reuse the caller's id so client and server logs line up
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    started = time.perf_counter()

    logger.info("[REQ %s] %s %s", request_id, request.method, request.url.path)

    try:
        response = await call_next(request)
    except Exception:
        logger.exception("[REQ %s] Unhandled error", request_id)
        raise

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("[REQ %s] %s in %.1fms", request_id, response.status_code, elapsed_ms)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response
