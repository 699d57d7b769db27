"""Tests for the lineage error taxonomy and its FastAPI rendering."""

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel, Field

from nursery.exceptions import (
    ConflictError,
    InsufficientQuantityError,
    LineageError,
    LineageValidationError,
    NotFoundError,
    RequestInProgressError,
    TransientStoreError,
    UnrecoverableError,
    register_exception_handlers,
)


class _Units(BaseModel):
    units: int = Field(ge=1)


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/short")
    async def short():
        raise InsufficientQuantityError(
            "b-1", requested=30, available=12, batch_number="1-2642-00001"
        )

    @app.get("/unavailable")
    async def unavailable():
        raise TransientStoreError("Ledger store timed out")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Batch", "b-404")

    @app.get("/unrecoverable")
    async def unrecoverable():
        raise UnrecoverableError(
            "req-1",
            TransientStoreError("ancestry down"),
            [TransientStoreError("ledger down")],
        )

    @app.get("/invalid")
    async def invalid():
        _Units.model_validate({"units": 0})

    return app


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=_build_app())
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.unit
@pytest.mark.asyncio
class TestErrorResponses:
    """Errors rendered through the registered handlers."""

    async def test_insufficient_quantity(self, client):
        response = await client.get("/short")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_QUANTITY"
        assert error["details"]["shortfall"] == 18
        assert error["details"]["batch_number"] == "1-2642-00001"
        assert "retryable" not in error

    async def test_transient_error_is_retryable(self, client):
        response = await client.get("/unavailable")

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "STORE_UNAVAILABLE"
        assert error["retryable"] is True
        assert error["message"].endswith("safe to retry.")

    async def test_not_found(self, client):
        response = await client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Batch not found: b-404"

    async def test_unrecoverable(self, client):
        response = await client.get("/unrecoverable")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "COMPENSATION_FAILED"
        assert error["details"] == {
            "cause": "ancestry down",
            "compensation_errors": ["ledger down"],
        }

    async def test_pydantic_validation(self, client):
        response = await client.get("/invalid")

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["errors"][0]["field"] == "units"


@pytest.mark.unit
class TestErrorAttributes:
    def test_every_error_is_a_lineage_error(self):
        for exc in (
            LineageValidationError("bad"),
            NotFoundError("Size", "s-1"),
            InsufficientQuantityError("b-1", 5, 3),
            ConflictError(),
            TransientStoreError(),
            RequestInProgressError("req-1"),
        ):
            assert isinstance(exc, LineageError)

    def test_retryable_flags(self):
        assert ConflictError().retryable
        assert TransientStoreError().retryable
        assert RequestInProgressError("req-1").retryable
        assert not LineageValidationError("bad").retryable
        assert not InsufficientQuantityError("b-1", 5, 3).retryable

    def test_shortfall_never_negative(self):
        assert InsufficientQuantityError("b-1", requested=5, available=3).shortfall == 2
        assert InsufficientQuantityError("b-1", requested=3, available=5).shortfall == 0
