import jobs.tasks as tasks
from jobs.celery_app import app as celery_app
from services.downgrade_sweeper import SweepResult


def test_downgrade_expired_task_runs_sweep(monkeypatch):
    calls = []

    def fake_run_sweep(session_factory, *, batch_size=None):
        calls.append((session_factory, batch_size))
        return SweepResult(examined=3, expired=1, account_ids=["acct-1"])

    monkeypatch.setattr(tasks, "run_sweep", fake_run_sweep)

    result = tasks.downgrade_expired.run(batch_size=25)

    assert result == {"examined": 3, "expired": 1, "accountIds": ["acct-1"], "errors": 0}
    assert calls == [(tasks.SessionLocal, 25)]


def test_beat_schedule_registers_sweeper():
    entry = celery_app.conf.beat_schedule["billing-downgrade-expired"]
    assert entry["task"] == "billing.downgrade_expired"
    assert entry["schedule"].total_seconds() == 60 * 60
