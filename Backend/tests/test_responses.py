"""
Tests for the response envelope and its exception handlers.

Run with: pytest tests/test_responses.py -v
"""
import os
import sys

import pytest
from fastapi import FastAPI, HTTPException
from httpx import AsyncClient, ASGITransport

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace.core.responses import (
    ApiError,
    ErrorCodes,
    get_pagination_params,
    install_exception_handlers,
    paginated_response,
)


def _app() -> FastAPI:
    app = FastAPI()
    install_exception_handlers(app)

    @app.get("/plain/{status_code}")
    async def plain(status_code: int):
        raise HTTPException(status_code=status_code, detail="Plain failure")

    @app.get("/coded")
    async def coded():
        raise ApiError(400, ErrorCodes.ALREADY_PAID, "Booking is already paid")

    @app.get("/typed")
    async def typed(limit: int):
        return {"limit": limit}

    return app


@pytest.fixture
async def envelope_client():
    async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as ac:
        yield ac


# ============================================================================
# ERROR ENVELOPE
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, code",
    [
        (400, "VALIDATION_ERROR"),
        (401, "UNAUTHORIZED"),
        (403, "FORBIDDEN"),
        (404, "NOT_FOUND"),
        (409, "CONFLICT"),
        (429, "RATE_LIMITED"),
        (418, "INTERNAL_ERROR"),
    ],
)
async def test_plain_http_exception_code_follows_status(envelope_client, status_code, code):
    response = await envelope_client.get(f"/plain/{status_code}")

    assert response.status_code == status_code
    body = response.json()
    assert body["status"] == "error"
    assert body["data"] is None
    assert body["error"]["code"] == code
    assert body["error"]["message"] == "Plain failure"


@pytest.mark.asyncio
async def test_api_error_keeps_its_own_code(envelope_client):
    response = await envelope_client.get("/coded")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ALREADY_PAID"


@pytest.mark.asyncio
async def test_request_validation_lists_paths(envelope_client):
    """Test: a query param that fails parsing => 400 VALIDATION_ERROR with per-field details"""
    response = await envelope_client.get("/typed", params={"limit": "many"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["message"] == "Validation failed"
    assert error["details"][0]["path"] == "query.limit"


# ============================================================================
# PAGINATION
# ============================================================================

def test_pagination_clamps_page_and_limit():
    assert get_pagination_params(0, 500) == (1, 100, 0)
    assert get_pagination_params(3, None) == (3, 20, 40)


def test_paginated_response_has_more():
    assert paginated_response([], 41, 2, 20)["has_more"] is True
    assert paginated_response([], 40, 2, 20)["has_more"] is False
