from __future__ import annotations

import threading

import pytest

from pawsql_mcp.scheduler import Scheduler


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_jobs_run_when_due():
    ticker = Ticker()
    scheduler = Scheduler(clock=ticker)
    runs = []
    scheduler.add_job("fast", 10, lambda: runs.append("fast"))
    scheduler.add_job("slow", 60, lambda: runs.append("slow"))

    assert scheduler.run_pending() == 0
    ticker.now = 10
    assert scheduler.run_pending() == 1
    ticker.now = 60
    assert scheduler.run_pending() == 2
    assert runs == ["fast", "fast", "slow"]


def test_failing_job_does_not_stop_others(caplog):
    ticker = Ticker()
    scheduler = Scheduler(clock=ticker)
    runs = []

    def broken():
        raise RuntimeError("sweep failed")

    scheduler.add_job("broken", 1, broken)
    scheduler.add_job("ok", 1, lambda: runs.append(1))
    ticker.now = 1

    assert scheduler.run_pending() == 2
    assert runs == [1]
    assert "Scheduled job broken failed" in caplog.text


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        Scheduler().add_job("bad", 0, lambda: None)


def test_background_thread_runs_and_stops():
    scheduler = Scheduler()
    ran = threading.Event()
    scheduler.add_job("tick", 0.01, ran.set)

    scheduler.start()
    try:
        assert ran.wait(2)
        assert scheduler.running
    finally:
        scheduler.stop()
    assert not scheduler.running


def test_broker_registers_maintenance_jobs(broker, clock):
    session = broker.store.open_session("k1", "a@x.com", "cloud", "https://api")
    clock.advance(hours=25)

    assert broker.store.cleanup_expired() == 1
    assert broker.store.get(session.session_id) is None
    assert [job.name for job in broker.scheduler._jobs] == ["session-cleanup", "stream-probe"]
