from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from web.routers.usage import router as usage_router


@pytest.fixture()
def client(build_client) -> TestClient:
    return build_client(usage_router)


def test_read_usage_for_implicit_free_account(client: TestClient) -> None:
    response = client.get("/api/v1/usage")

    assert response.status_code == 200
    payload = response.json()
    assert payload["planTier"] == "free"
    assert payload["operations"] == {"used": 0, "limit": 2, "remaining": 2}
    assert payload["meteredMinutes"]["remaining"] is None


def test_third_operation_on_free_plan_is_quota_exceeded(client: TestClient) -> None:
    for artifact in ("clip-1", "clip-2"):
        assert client.post("/api/v1/usage/operations", json={"artifactId": artifact}).status_code == 200

    response = client.post("/api/v1/usage/operations", json={"artifactId": "clip-3"})

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["code"] == "plan.quota_exceeded"
    assert detail["reason"] == "quota_exceeded"
    assert detail["planTier"] == "free"
    assert detail["quota"] == {"limit": 2, "used": 2, "remaining": 0}
    assert client.get("/api/v1/usage").json()["operations"]["used"] == 2


def test_repeated_artifact_is_counted_once(client: TestClient) -> None:
    first = client.post("/api/v1/usage/operations", json={"artifactId": "clip-1"})
    second = client.post("/api/v1/usage/operations", json={"artifactId": "clip-1"})

    assert first.json()["recorded"] is True
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["recorded"] is False
    assert second.json()["usage"]["operations"]["used"] == 1


def test_artifact_longer_than_plan_allows_is_rejected(client: TestClient) -> None:
    response = client.post("/api/v1/usage/operations", json={"artifactId": "long", "durationSeconds": 120})

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "artifact_too_long"
    assert client.get("/api/v1/usage").json()["operations"]["used"] == 0


def test_negative_duration_fails_validation(client: TestClient) -> None:
    response = client.post("/api/v1/usage/operations", json={"durationSeconds": -5})
    assert response.status_code == 422


def test_free_plan_allows_one_category(client: TestClient) -> None:
    single = client.put("/api/v1/usage/categories", json={"categories": ["actors"]})
    assert single.status_code == 200
    assert single.json()["selectedCategories"] == ["actors"]
    assert single.json()["primaryCategory"] == "actors"

    double = client.put("/api/v1/usage/categories", json={"categories": ["actors", "musicians"]})
    assert double.status_code == 403
    assert double.json()["detail"]["reason"] == "category_limit_reached"


def test_coach_category_requires_dashboard_feature(client: TestClient) -> None:
    response = client.put("/api/v1/usage/categories", json={"categories": ["coach"]})

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "feature_required"
    assert response.json()["detail"]["feature"] == "dashboard"


def test_unknown_category_is_a_bad_request(client: TestClient) -> None:
    response = client.put("/api/v1/usage/categories", json={"categories": ["astronauts"]})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "account.unknown_category"


def test_usage_requires_sign_in(build_client) -> None:
    anonymous = build_client(usage_router, user_id=None)
    assert anonymous.get("/api/v1/usage").status_code == 401
