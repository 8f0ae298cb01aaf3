"""Tests for the error envelope and exception handler mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from sessionforge.api.error_handling import (
    REAUTHENTICATE_MESSAGE,
    _error_code_for_status,
    register_exception_handlers,
)
from sessionforge.api.schemas import Envelope, ErrorBody
from sessionforge.service.errors import (
    DuplicateIdentifier,
    ForbiddenError,
    InvalidCredentials,
    InvalidToken,
    TokenExpired,
    TokenReuseDetected,
    ValidationError as ServiceValidationError,
)
from sessionforge.service.security_events import SecurityEvent
from sessionforge.storage.errors import ConstraintViolation, StoreUnavailable


def _reuse_error():
    return TokenReuseDetected(
        SecurityEvent(
            kind="refresh_token_reuse",
            principal_id="p-1",
            chain_root_id="root",
            token_id="tok",
            revoked_count=2,
            occurred_at=datetime.now(timezone.utc),
        )
    )


_RAISERS = {
    "credentials": InvalidCredentials,
    "invalid-token": InvalidToken,
    "expired": TokenExpired,
    "reuse": _reuse_error,
    "duplicate": lambda: DuplicateIdentifier(
        "identifier already registered", detail={"field": "identifier"}
    ),
    "invalid": lambda: ServiceValidationError(
        "registration rejected", detail={"password": ["too short"]}
    ),
    "forbidden": lambda: ForbiddenError("insufficient role"),
    "constraint": lambda: ConstraintViolation("login already exists", {"field": "login"}),
    "unavailable": lambda: StoreUnavailable(operation="rotate"),
    "boom": lambda: RuntimeError("SELECT * FROM principal failed at /var/lib/db"),
}


class Payload(BaseModel):
    value: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    async def raise_kind(kind: str):
        raise _RAISERS[kind]()

    @app.post("/echo")
    async def echo(body: Payload):
        return {"value": body.value}

    return TestClient(app, raise_server_exceptions=False)


class TestSchemas:
    def test_error_body_requires_known_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok", data={"a": 1}).request_id

    def test_status_codes_map_to_stable_codes(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(503) == "unavailable"
        assert _error_code_for_status(418) == "server_error"


class TestAuthenticationFailures:
    @pytest.mark.parametrize("kind", ["credentials", "invalid-token", "expired", "reuse"])
    def test_every_kind_looks_the_same(self, client, kind):
        response = client.get(f"/raise/{kind}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": REAUTHENTICATE_MESSAGE,
            "details": None,
        }


class TestOtherFailures:
    def test_duplicate_identifier(self, client):
        response = client.get("/raise/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "identifier"}

    def test_service_validation_error(self, client):
        response = client.get("/raise/invalid")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"] == {"password": ["too short"]}

    def test_forbidden(self, client):
        response = client.get("/raise/forbidden")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_constraint_violation(self, client):
        response = client.get("/raise/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_store_unavailable(self, client):
        response = client.get("/raise/unavailable")
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["error"]["code"] == "unavailable"

    def test_request_validation_uses_400(self, client):
        response = client.post("/echo", json={"value": "not-a-number"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "value"]

    def test_unhandled_error_hides_internals(self, client):
        response = client.get("/raise/boom")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error == {"code": "server_error", "message": "internal server error", "details": None}
        assert "principal" not in response.text
