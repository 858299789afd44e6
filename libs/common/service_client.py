"""Reusable async HTTP client for internal service-to-service communication.

Calls to collaborating services (notifications, invoicing) go through this
helper so they all share the same timeout and authentication header.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)


async def internal_request(
    *,
    service_url: str,
    method: str,
    path: str,
    calling_service: str,
    json: Any = None,
    params: Optional[dict] = None,
    timeout: Optional[float] = None,
    idempotency_key: Optional[str] = None,
) -> httpx.Response:
    """Make an authenticated internal service-to-service HTTP call.

    Args:
        service_url: Base URL of the target service.
        method: HTTP method (GET, POST, ...).
        path: URL path on the target service.
        calling_service: Name of the calling service, sent as X-Caller-Service.
        json: Optional JSON body.
        params: Optional query parameters.
        timeout: Request timeout in seconds (defaults to INTERNAL_TIMEOUT_SECONDS).
        idempotency_key: Sent as Idempotency-Key so the target can drop
            repeats of a call that is retried after a partial failure.

    Returns:
        The httpx.Response object.

    Raises:
        httpx.RequestError on connection failures or timeouts.
    """
    settings = get_settings()
    url = f"{service_url}{path}"
    headers = {
        "X-Internal-Secret": settings.INTERNAL_SERVICE_SECRET,
        "X-Caller-Service": calling_service,
    }
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    async with httpx.AsyncClient(
        timeout=timeout or settings.INTERNAL_TIMEOUT_SECONDS
    ) as client:
        response = await client.request(
            method,
            url,
            headers=headers,
            json=json,
            params=params,
        )
    return response


async def internal_post(
    *,
    service_url: str,
    path: str,
    calling_service: str,
    json: Any = None,
    timeout: Optional[float] = None,
    idempotency_key: Optional[str] = None,
) -> httpx.Response:
    """Convenience wrapper for POST requests."""
    return await internal_request(
        service_url=service_url,
        method="POST",
        path=path,
        calling_service=calling_service,
        json=json,
        timeout=timeout,
        idempotency_key=idempotency_key,
    )
