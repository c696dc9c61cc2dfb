import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from enrollment.core.logging import get_logger, reset_request_id, set_request_id

logger = get_logger("api.request")

_MAX_REQUEST_ID_LENGTH = 128


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Stamp every request with an id, echo it back and log the request span."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        incoming = (request.headers.get("X-Request-ID") or "").strip()
        request_id = incoming[:_MAX_REQUEST_ID_LENGTH] or str(uuid.uuid4())
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = perf_counter()
        response: Response | None = None
        span = {"component": "api", "method": request.method, "path": request.url.path}

        logger.info("request.start", extra=span)
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request.error", extra=span)
            raise
        finally:
            logger.info(
                "request.end",
                extra={
                    **span,
                    "status_code": response.status_code if response is not None else 500,
                    "duration_ms": int((perf_counter() - started) * 1000),
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            reset_request_id(token)
