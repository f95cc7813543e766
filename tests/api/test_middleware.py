"""Tests for RequestIDMiddleware."""

import pytest
from uuid import UUID
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.testclient import TestClient

from api.middleware import RequestIDMiddleware


@pytest.fixture
def app():
    """Minimal FastAPI app with RequestIDMiddleware."""
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return JSONResponse({"request_id": request.state.request_id})

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestRequestIDMiddleware:
    """Tests for RequestIDMiddleware."""

    def test_response_has_request_id_header(self, client):
        response = client.get("/echo")

        UUID(response.headers["X-Request-ID"])

    def test_request_state_matches_header(self, client):
        response = client.get("/echo")

        assert response.headers["X-Request-ID"] == response.json()["request_id"]

    def test_each_request_gets_unique_id(self, client):
        r1 = client.get("/echo")
        r2 = client.get("/echo")

        assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]

    def test_incoming_id_is_kept(self, client):
        """An upstream proxy's request id is propagated, not replaced."""
        response = client.get("/echo", headers={"X-Request-ID": "edge-42"})

        assert response.headers["X-Request-ID"] == "edge-42"
        assert response.json()["request_id"] == "edge-42"
