from typing import Iterator

import jwt
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from services.auth_tokens import AuthTokenError, create_access_token, decode_token
from web.deps import get_current_user
from web.middleware.auth_context import AuthenticatedUser, auth_context_middleware, extract_bearer


@pytest.fixture()
def secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("AUTH_JWT_SECRET", "unit-test-secret")
    return "unit-test-secret"


@pytest.fixture()
def client() -> Iterator[TestClient]:
    app = FastAPI()

    @app.middleware("http")
    async def _auth(request: Request, call_next):
        return await auth_context_middleware(request, call_next)

    @app.get("/api/v1/me")
    def me(user: AuthenticatedUser = Depends(get_current_user)):
        return {"id": user.id, "email": user.email}

    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        test_client.close()


def test_extract_bearer() -> None:
    assert extract_bearer("Bearer abc") == "abc"
    assert extract_bearer("bearer   abc  ") == "abc"
    assert extract_bearer("Basic abc") is None
    assert extract_bearer(None) is None


def test_token_round_trip(secret: str) -> None:
    token, ttl = create_access_token(user_id="acct-1", email="a@example.com", ttl_seconds=120)

    payload = decode_token(token, scope="access")

    assert ttl == 120
    assert payload["sub"] == "acct-1"
    assert payload["aud"] == "billing-api"


def test_wrong_scope_is_rejected(secret: str) -> None:
    token = jwt.encode({"sub": "acct-1", "aud": "billing-api", "iss": "billing-auth", "scope": "refresh"}, secret)
    with pytest.raises(AuthTokenError) as exc:
        decode_token(token, scope="access")
    assert exc.value.code == "auth.token_invalid"


def test_missing_secret_is_not_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AUTH_JWT_SECRET", raising=False)
    monkeypatch.delenv("AUTH_SECRET", raising=False)
    with pytest.raises(AuthTokenError) as exc:
        create_access_token(user_id="acct-1")
    assert exc.value.code == "auth.not_configured"


def test_valid_token_attaches_user(client: TestClient, secret: str) -> None:
    token, _ = create_access_token(user_id="acct-7", email="seven@example.com")

    response = client.get("/api/v1/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {"id": "acct-7", "email": "seven@example.com"}


def test_missing_token_is_unauthorized(client: TestClient, secret: str) -> None:
    response = client.get("/api/v1/me")

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.required"


def test_expired_token_is_rejected_by_middleware(client: TestClient, secret: str) -> None:
    token = jwt.encode(
        {"sub": "acct-1", "aud": "billing-api", "iss": "billing-auth", "scope": "access", "exp": 1},
        secret,
    )

    response = client.get("/api/v1/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.token_expired"


def test_opaque_bearer_passes_through_without_user(client: TestClient, secret: str) -> None:
    response = client.get("/api/v1/me", headers={"Authorization": "Bearer cron-secret-value"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.required"
