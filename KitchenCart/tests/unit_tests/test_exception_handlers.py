"""
Unit tests for the HTTP mapping of the exception hierarchy.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from KitchenCart.exceptions import (
    AuthenticationError,
    CaptchaDetectedError,
    CredentialNotFoundError,
    InvalidTwoFactorTransitionError,
    OrderMinimumError,
    RateLimitedError,
    ScrapingError,
    ValidationError,
    get_http_status_code,
)
from KitchenCart.handlers.exception_handlers import register_exception_handlers


@pytest.mark.parametrize("error, status", [
    (ValidationError("bad code"), 422),
    (CredentialNotFoundError("missing", credential_id="cred-1"), 404),
    (InvalidTwoFactorTransitionError("already verified"), 409),
    (AuthenticationError("wrong password"), 401),
    (RateLimitedError("slow down", retry_after=60), 429),
    (CaptchaDetectedError("captcha"), 503),
    (OrderMinimumError("too small", minimum=200.0, current_total=50.0), 409),
    (ScrapingError("selector missing"), 502),
    (RuntimeError("boom"), 500),
])
def test_status_codes(error, status):
    assert get_http_status_code(error) == status


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/minimum")
    async def minimum():
        raise OrderMinimumError("Order total $50.00 is below the $200.00 minimum", minimum=200.0,
                                current_total=50.0, supplier_name="Chef's Warehouse")

    @app.get("/credential")
    async def credential():
        raise CredentialNotFoundError("Credential not found", credential_id="cred-1")

    return TestClient(app)


class TestExceptionHandlers:

    def test_supplier_error_response(self, client):
        response = client.get("/minimum")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "Order total $50.00 is below the $200.00 minimum"
        assert body["data"]["error_code"] == "ORDER_MINIMUM"
        assert body["data"]["details"] == {
            "supplier_name": "Chef's Warehouse", "minimum": 200.0, "current_total": 50.0,
        }

    def test_not_found_response(self, client):
        response = client.get("/credential")

        assert response.status_code == 404
        assert response.json()["data"]["details"]["resource_id"] == "cred-1"
