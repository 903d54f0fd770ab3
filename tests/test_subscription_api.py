from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List

import pytest
from fastapi.testclient import TestClient

from core.config import load_billing_settings
from core.plan_constants import PlanTier, SubscriptionStatus
from core.timeutils import utcnow
from services.payments import GatewayError
from services.subscription_lifecycle import assign_paid_plan, atomic, cancel_subscription, get_snapshot
from web.deps import get_optional_gateway
from web.routers import subscription as subscription_module
from web.routers.subscription import router as subscription_router


class _RecordingGateway:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[tuple] = []

    async def stop_recurring_charge(self, recurring_id: str) -> dict:
        self.calls.append(("stop", recurring_id))
        if self.fail:
            raise GatewayError(503, "gateway unreachable")
        return {"ok": True}

    async def resume_recurring_charge(self, recurring_id: str) -> dict:
        self.calls.append(("resume", recurring_id))
        return {"ok": True}


def _subscribe(session, account_id: str = "acct-1", *, days_ago: int = 1) -> None:
    with atomic(session):
        assign_paid_plan(
            session,
            account_id,
            PlanTier.PRO,
            source="test",
            now=utcnow() - timedelta(days=days_ago),
            recurring_id="R-1",
        )


@pytest.fixture()
def client(build_client) -> TestClient:
    return build_client(subscription_router)


def _with_gateway(client: TestClient, gateway: _RecordingGateway) -> TestClient:
    client.app.dependency_overrides[get_optional_gateway] = lambda: gateway
    return client


def test_read_implicit_free_subscription(client: TestClient) -> None:
    response = client.get("/api/v1/subscription")

    assert response.status_code == 200
    payload = response.json()
    assert payload["subscription"]["planTier"] == "free"
    assert payload["subscription"]["status"] == "active"
    assert payload["subscription"]["periodEnd"] is None
    assert payload["limits"]["operationsPerPeriod"] == 2
    assert payload["limits"]["categoryCap"] == 1
    assert payload["usage"]["operations"]["used"] == 0


def test_read_paid_subscription(client: TestClient, db_session) -> None:
    _subscribe(db_session)

    payload = client.get("/api/v1/subscription").json()

    assert payload["subscription"]["planTier"] == "pro"
    assert payload["subscription"]["autoRenew"] is True
    assert payload["limits"]["operationsPerPeriod"] == 30
    assert "comparison" in payload["limits"]["features"]


def test_cancel_stops_recurring_charge_and_keeps_access(client: TestClient, db_session) -> None:
    _subscribe(db_session)
    gateway = _RecordingGateway()
    _with_gateway(client, gateway)

    response = client.post("/api/v1/subscription", json={"action": "cancel"})

    assert response.status_code == 200
    body = response.json()
    assert body["changed"] is True
    assert body["transition"]["toStatus"] == "canceled"
    assert gateway.calls == [("stop", "R-1")]
    db_session.expire_all()
    assert get_snapshot(db_session, "acct-1").status is SubscriptionStatus.CANCELED
    assert client.get("/api/v1/subscription").json()["subscription"]["planTier"] == "pro"


def test_cancel_succeeds_when_gateway_sync_fails(client: TestClient, db_session) -> None:
    _subscribe(db_session)
    gateway = _RecordingGateway(fail=True)
    _with_gateway(client, gateway)

    response = client.post("/api/v1/subscription", json={"action": "cancel"})

    assert response.status_code == 200
    assert gateway.calls == [("stop", "R-1")]
    db_session.expire_all()
    assert get_snapshot(db_session, "acct-1").status is SubscriptionStatus.CANCELED


def test_second_cancel_is_a_no_op(client: TestClient, db_session) -> None:
    _subscribe(db_session)
    gateway = _RecordingGateway()
    _with_gateway(client, gateway)

    client.post("/api/v1/subscription", json={"action": "cancel"})
    again = client.post("/api/v1/subscription", json={"action": "cancel"})

    assert again.status_code == 200
    assert again.json()["changed"] is False
    assert again.json()["transition"]["reason"] == "already_canceled"
    assert gateway.calls == [("stop", "R-1")]


def test_resume_after_cancel(client: TestClient, db_session) -> None:
    _subscribe(db_session)
    gateway = _RecordingGateway()
    _with_gateway(client, gateway)
    client.post("/api/v1/subscription", json={"action": "cancel"})

    response = client.post("/api/v1/subscription", json={"action": "resume"})

    assert response.status_code == 200
    assert response.json()["transition"]["toStatus"] == "active"
    assert gateway.calls[-1] == ("resume", "R-1")


def test_cancel_without_subscription_is_a_bad_request(client: TestClient) -> None:
    response = client.post("/api/v1/subscription", json={"action": "cancel"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "subscription.not_found"


def test_unknown_action_fails_validation(client: TestClient) -> None:
    assert client.post("/api/v1/subscription", json={"action": "upgrade"}).status_code == 422


def test_actions_require_sign_in(build_client) -> None:
    anonymous = build_client(subscription_router, user_id=None)

    assert anonymous.get("/api/v1/subscription").status_code == 401
    assert anonymous.post("/api/v1/subscription", json={"action": "cancel"}).status_code == 401


def test_downgrade_sweep_is_disabled_without_cron_secret(build_client, monkeypatch) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)
    load_billing_settings.cache_clear()

    response = build_client(subscription_router, user_id=None).post(
        "/api/v1/subscription", json={"action": "downgrade-expired", "secret": "anything"}
    )

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "cron.not_configured"


def test_downgrade_sweep_rejects_wrong_secret(build_client, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    load_billing_settings.cache_clear()

    response = build_client(subscription_router, user_id=None).post(
        "/api/v1/subscription", json={"action": "downgrade-expired", "secret": "guess"}
    )

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "cron.invalid_secret"


@pytest.mark.parametrize("delivery", ["bearer", "body", "query"])
def test_downgrade_sweep_expires_lapsed_subscriptions(build_client, db_session, monkeypatch, delivery) -> None:
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    load_billing_settings.cache_clear()
    _subscribe(db_session, days_ago=40)
    with atomic(db_session):
        cancel_subscription(db_session, "acct-1", now=utcnow() - timedelta(days=35))

    client = build_client(subscription_router, user_id=None)
    payload = {"action": "downgrade-expired"}
    kwargs = {}
    if delivery == "bearer":
        kwargs["headers"] = {"Authorization": "Bearer s3cret"}
    elif delivery == "body":
        payload["secret"] = "s3cret"
    else:
        kwargs["params"] = {"secret": "s3cret"}

    response = client.post("/api/v1/subscription", json=payload, **kwargs)

    assert response.status_code == 200
    sweep = response.json()["sweep"]
    assert sweep["expired"] == 1
    assert sweep["accountIds"] == ["acct-1"]
    db_session.expire_all()
    assert get_snapshot(db_session, "acct-1").tier is PlanTier.FREE


def test_transition_runs_outside_the_event_loop(client: TestClient, db_session, monkeypatch) -> None:
    _subscribe(db_session)
    loops = []

    def _cancel(session, account_id, **kwargs):
        try:
            loops.append(asyncio.get_running_loop())
        except RuntimeError:
            loops.append(None)
        return cancel_subscription(session, account_id, **kwargs)

    monkeypatch.setitem(subscription_module._TRANSITIONS, "cancel", _cancel)

    response = client.post("/api/v1/subscription", json={"action": "cancel"})

    assert response.status_code == 200
    assert loops == [None]
