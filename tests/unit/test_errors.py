"""Unit tests for the error taxonomy and its HTTP rendering."""

import json

import pytest
from libs.common.error_handler import service_error_handler
from services.orders_service.errors import (
    AmountMismatch,
    InvalidMovement,
    MalformedPayload,
    StockExhausted,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "exc, code",
    [
        (AmountMismatch("Paid amount 100 does not match order total 200"), "amount_mismatch"),
        (StockExhausted("Cuaderno", available=1, requested=3), "stock_exhausted"),
        (InvalidMovement("Quantity must not be zero"), "invalid_movement"),
    ],
)
def test_business_rule_errors_are_unprocessable(exc, code):
    assert exc.status_code == 422
    assert exc.code == code


@pytest.mark.asyncio
@pytest.mark.unit
async def test_handler_renders_status_and_body():
    exc = StockExhausted("Cuaderno", available=1, requested=3)

    response = await service_error_handler(None, exc)

    assert response.status_code == 422
    body = json.loads(response.body)
    assert body["error"] == "stock_exhausted"
    assert body["details"] == {"product_name": "Cuaderno", "available": 1, "requested": 3}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_shape_errors_stay_bad_request():
    exc = MalformedPayload("Malformed carrier tracking payload")

    response = await service_error_handler(None, exc)

    assert response.status_code == 400
