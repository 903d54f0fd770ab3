from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.plan_constants import UsageKind
from models.account import Account
from models.usage import UsageEvent
from services import usage_ledger
from services.billing_errors import BillingValidationError
from services.usage_ledger import aggregate, record_usage

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_record_and_aggregate_within_window(db_session) -> None:
    record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="a1", occurred_at=NOW)
    record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="a2", occurred_at=NOW)
    record_usage(
        db_session,
        account_id="acct-1",
        kind=UsageKind.METERED_DURATION,
        quantity=90,
        artifact_id="a2",
        occurred_at=NOW,
    )
    record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, occurred_at=NOW - timedelta(days=40))
    record_usage(db_session, account_id="acct-2", kind=UsageKind.OPERATION, occurred_at=NOW)
    db_session.commit()

    usage = aggregate(db_session, "acct-1", NOW - timedelta(days=9), NOW + timedelta(days=21))
    assert usage.operation_count == 2
    assert usage.metered_seconds == 90
    assert usage.metered_minutes == pytest.approx(1.5)


def test_same_artifact_is_recorded_once(db_session) -> None:
    first = record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="clip-7", occurred_at=NOW)
    second = record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="clip-7", occurred_at=NOW)
    db_session.commit()

    assert first.created is True
    assert second.created is False
    assert second.event_id == first.event_id
    assert db_session.query(UsageEvent).count() == 1


def test_events_without_artifact_always_append(db_session) -> None:
    for _ in range(3):
        assert record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, occurred_at=NOW).created
    db_session.commit()
    assert aggregate(db_session, "acct-1", NOW - timedelta(days=1), NOW + timedelta(days=1)).operation_count == 3


def test_negative_quantity_is_rejected(db_session) -> None:
    with pytest.raises(BillingValidationError):
        record_usage(db_session, account_id="acct-1", kind=UsageKind.METERED_DURATION, quantity=-5)


def test_window_end_is_exclusive(db_session) -> None:
    record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, occurred_at=NOW)
    db_session.commit()
    assert aggregate(db_session, "acct-1", NOW - timedelta(days=1), NOW).operation_count == 0
    assert aggregate(db_session, "acct-1", NOW, NOW + timedelta(seconds=1)).operation_count == 1


def test_concurrent_duplicate_keeps_the_callers_pending_work(db_session, monkeypatch) -> None:
    record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="clip-7", occurred_at=NOW)
    db_session.commit()

    lookups = []
    real_find = usage_ledger.find_usage_event

    def _miss_first_lookup(*args, **kwargs):
        lookups.append(args)
        if len(lookups) == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(usage_ledger, "find_usage_event", _miss_first_lookup)
    db_session.add(Account(id="acct-2"))
    db_session.flush()

    result = record_usage(db_session, account_id="acct-1", kind=UsageKind.OPERATION, artifact_id="clip-7", occurred_at=NOW)
    db_session.commit()

    assert result.created is False
    assert len(lookups) == 2
    assert db_session.get(Account, "acct-2") is not None
    assert db_session.query(UsageEvent).count() == 1
