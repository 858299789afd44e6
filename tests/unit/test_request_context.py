"""Unit tests for request tracing and structured log records."""

import json
import logging

import pytest
from libs.common.logging import (
    JsonFormatter,
    clear_request_context,
    get_request_id,
    set_request_context,
)
from libs.common.middleware import webhook_source


@pytest.mark.unit
@pytest.mark.parametrize(
    "path, expected",
    [
        ("/webhooks/wompi", "wompi"),
        ("/webhooks/payu/", "payu"),
        ("/webhooks/carrier", "carrier"),
        ("/webhooks/", None),
        ("/admin/orders", None),
        ("/health", None),
    ],
)
def test_webhook_source(path, expected):
    assert webhook_source(path) == expected


@pytest.mark.unit
def test_json_records_carry_request_context():
    request_id = set_request_context(path="/webhooks/payu", method="POST", source="payu")
    try:
        record = logging.LogRecord(
            "orders", logging.WARNING, __file__, 1, "Signature is not valid", None, None
        )
        record.extra_fields = {"reference_sale": "1042"}

        payload = json.loads(JsonFormatter().format(record))
    finally:
        clear_request_context()

    assert payload["request_id"] == request_id
    assert payload["source"] == "payu"
    assert payload["reference_sale"] == "1042"
    assert payload["level"] == "WARNING"
    assert get_request_id() is None


@pytest.mark.unit
def test_admin_records_have_no_source():
    set_request_context(request_id="abc123", path="/admin/orders", method="GET")
    try:
        record = logging.LogRecord("orders", logging.INFO, __file__, 1, "ok", None, None)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        clear_request_context()

    assert payload["request_id"] == "abc123"
    assert "source" not in payload


@pytest.mark.asyncio
@pytest.mark.integration
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "trace-77"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "trace-77"
