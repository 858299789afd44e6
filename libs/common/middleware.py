"""Request tracing middleware for the orders API.

Every request gets a request id (propagated from ``X-Request-ID`` when the
caller sends one). Webhook calls are additionally tagged with their source
(``wompi``, ``payu``, ``carrier``) so a gateway's delivery history can be
followed in the logs.

Usage:
    from libs.common.middleware import add_observability_middleware

    app = FastAPI()
    add_observability_middleware(app)
"""
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from libs.common.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_request_context,
)

logger = get_logger(__name__)

WEBHOOK_PREFIX = "/webhooks/"
UNLOGGED_PATHS = frozenset({"/health"})

# Gateways time out well before this; anything slower gets redelivered
SLOW_WEBHOOK_MS = 5000


def webhook_source(path: str) -> Optional[str]:
    """``/webhooks/wompi`` -> ``wompi``; None for every other path."""
    if not path.startswith(WEBHOOK_PREFIX):
        return None
    source = path[len(WEBHOOK_PREFIX):].strip("/").split("/", 1)[0]
    return source or None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds the request context and logs one line per request.

    Rejected webhooks (4xx) and slow webhooks are logged as warnings: the
    first usually means a key rotation, the second a redelivery.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        source = webhook_source(path)
        request_id = set_request_context(
            request_id=request.headers.get("X-Request-ID"),
            path=path,
            method=request.method,
            source=source,
        )
        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            if path not in UNLOGGED_PATHS:
                self._log_completion(source, response.status_code, _elapsed_ms(start_time))

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            logger.exception(
                "Request failed with unhandled exception",
                extra={"extra_fields": {
                    "error": str(e),
                    "duration_ms": _elapsed_ms(start_time),
                }},
            )
            raise

        finally:
            clear_request_context()

    @staticmethod
    def _log_completion(source: Optional[str], status_code: int, duration_ms: float) -> None:
        fields = {"status_code": status_code, "duration_ms": duration_ms}
        if source is None:
            level = "warning" if status_code >= 400 else "info"
            getattr(logger, level)("Request completed", extra={"extra_fields": fields})
            return

        if status_code >= 400:
            logger.warning("Webhook rejected", extra={"extra_fields": fields})
        elif duration_ms > SLOW_WEBHOOK_MS:
            logger.warning("Slow webhook acknowledged", extra={"extra_fields": fields})
        else:
            logger.info("Webhook acknowledged", extra={"extra_fields": fields})


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


def add_observability_middleware(app: FastAPI) -> None:
    """Configure logging and install the request context middleware."""
    configure_logging()
    app.add_middleware(RequestContextMiddleware)
    logger.info("Observability middleware initialized")
