import threading
from datetime import timedelta
from unittest import mock

import pytest

from services.errors import ConfigurationError, NotFoundError, RunInProgress, TransientStoreError
from services.models import Warehouse
from services.pm_engine import AutomationSummary
from services.schedulers import EscalationScheduler, PMScheduler, RunLock

from conftest import NOW


@pytest.fixture
def run_lock():
    return RunLock()


@pytest.fixture
def pm_scheduler(pm_engine, store, run_lock, clock):
    return PMScheduler(pm_engine, store, run_lock, interval_minutes=60, clock=clock,
                       warn_after=timedelta(minutes=30))


class TestRunLock:
    def test_acquire_is_exclusive_per_key(self, run_lock):
        assert run_lock.acquire(("pm_scheduler", "W1"), NOW)
        assert not run_lock.acquire(("pm_scheduler", "W1"), NOW)
        assert run_lock.acquire(("pm_scheduler", "W2"), NOW)
        assert run_lock.acquire(("escalation_scheduler", "W1"), NOW)

    def test_release_and_started_at(self, run_lock):
        key = ("pm_scheduler", "W1")
        run_lock.acquire(key, NOW)
        assert run_lock.started_at(key) == NOW
        assert set(run_lock.held("pm_scheduler")) == {key}
        run_lock.release(key)
        assert run_lock.started_at(key) is None
        assert run_lock.acquire(key, NOW)


class TestRunNow:
    def test_runs_engine_and_records_result(self, pm_scheduler, store):
        summary = pm_scheduler.run_now("W1", triggered_by="u-admin")

        assert summary.generated == 1
        record = pm_scheduler.last_results["W1"]
        assert record.ok
        assert record.triggered_by == "u-admin"
        assert record.summary["generated"] == 1
        assert pm_scheduler.run_lock.held() == {}

    def test_rejected_while_warehouse_is_running(self, pm_scheduler, run_lock):
        run_lock.acquire(("pm_scheduler", "W1"), NOW)
        with pytest.raises(RunInProgress):
            pm_scheduler.run_now("W1")

    def test_other_job_does_not_block(self, pm_scheduler, run_lock):
        run_lock.acquire(("escalation_scheduler", "W1"), NOW)
        assert pm_scheduler.run_now("W1").generated == 1

    def test_validates_warehouse(self, pm_scheduler):
        with pytest.raises(ConfigurationError):
            pm_scheduler.run_now("")
        with pytest.raises(NotFoundError):
            pm_scheduler.run_now("W9")

    def test_engine_error_propagates_and_releases_lock(self, store, run_lock, clock):
        engine = mock.Mock()
        engine.run_automation.side_effect = TransientStoreError("db gone")
        scheduler = PMScheduler(engine, store, run_lock, interval_minutes=5, clock=clock)

        with pytest.raises(TransientStoreError):
            scheduler.run_now("W1")

        assert run_lock.held() == {}
        assert not scheduler.last_results["W1"].ok
        assert scheduler.last_results["W1"].error == "db gone"

    def test_interval_must_be_positive(self, pm_engine, store, run_lock):
        with pytest.raises(ConfigurationError):
            PMScheduler(pm_engine, store, run_lock, interval_minutes=0)


class TestTick:
    def test_inactive_job_does_nothing(self, pm_scheduler, store):
        pm_scheduler.tick()
        assert store.work_orders == {}
        assert pm_scheduler.last_run_at is None

    def test_tick_runs_every_active_warehouse(self, store, run_lock, clock):
        store.add_warehouse(Warehouse(id="W2", name="Cold store"))
        store.add_warehouse(Warehouse(id="W3", name="Closed site", active=False))
        engine = mock.Mock()
        engine.run_automation.side_effect = lambda warehouse_id, now: AutomationSummary(warehouse_id, ran_at=now)
        scheduler = PMScheduler(engine, store, run_lock, interval_minutes=5, clock=clock)
        scheduler.start()

        scheduler.tick()

        assert sorted(c.args[0] for c in engine.run_automation.call_args_list) == ["W1", "W2"]
        assert scheduler.last_run_at == NOW

    def test_tick_skips_busy_warehouse(self, pm_scheduler, run_lock, store):
        run_lock.acquire(("pm_scheduler", "W1"), NOW)
        pm_scheduler.start()

        pm_scheduler.tick()

        assert pm_scheduler.skipped_ticks == 1
        assert store.work_orders == {}

    def test_tick_never_raises(self, store, run_lock, clock):
        store.add_warehouse(Warehouse(id="W2", name="Cold store"))
        engine = mock.Mock()

        def run(warehouse_id, now):
            if warehouse_id == "W1":
                raise RuntimeError("boom")
            return AutomationSummary(warehouse_id, ran_at=now)

        engine.run_automation.side_effect = run
        scheduler = PMScheduler(engine, store, run_lock, interval_minutes=5, clock=clock)
        scheduler.start()

        scheduler.tick()

        assert not scheduler.last_results["W1"].ok
        assert scheduler.last_results["W2"].ok
        assert run_lock.held() == {}

    def test_stop_lets_in_flight_run_finish(self, store, run_lock, clock):
        started = threading.Event()
        release = threading.Event()
        engine = mock.Mock()

        def slow(warehouse_id, now):
            started.set()
            release.wait(5)
            return AutomationSummary(warehouse_id, ran_at=now)

        engine.run_automation.side_effect = slow
        scheduler = PMScheduler(engine, store, run_lock, interval_minutes=5, clock=clock)
        scheduler.start()
        worker = threading.Thread(target=scheduler.tick)
        worker.start()
        assert started.wait(5)

        scheduler.stop()
        release.set()
        worker.join(5)

        assert not worker.is_alive()
        assert scheduler.last_results["W1"].ok
        assert run_lock.held() == {}

        scheduler.tick()
        assert engine.run_automation.call_count == 1

    def test_stop_mid_tick_logs_the_warehouses_left_over(self, store, run_lock, clock, caplog):
        store.add_warehouse(Warehouse(id="W2", name="Cold store"))
        store.add_warehouse(Warehouse(id="W3", name="Overflow"))
        engine = mock.Mock()
        scheduler = PMScheduler(engine, store, run_lock, interval_minutes=5, clock=clock)

        def run_then_stop(warehouse_id, now):
            scheduler.stop()
            return AutomationSummary(warehouse_id, ran_at=now)

        engine.run_automation.side_effect = run_then_stop
        scheduler.start()
        with caplog.at_level("INFO", logger="services.schedulers"):
            scheduler.tick()

        assert [c.args[0] for c in engine.run_automation.call_args_list] == ["W1"]
        assert "skipped warehouse(s) W2, W3" in caplog.text


class TestStatus:
    def test_status_fields(self, pm_scheduler):
        pm_scheduler.run_now("W1")
        status = pm_scheduler.status()

        assert status["job_id"] == "pm_scheduler"
        assert status["interval_minutes"] == 60
        assert status["enabled"] is True
        assert status["active"] is False
        assert status["running"] is False
        assert status["next_run_at"] is None
        assert status["last_results"]["W1"]["ok"] is True

    def test_overrunning_run_is_flagged(self, pm_scheduler, run_lock):
        run_lock.acquire(("pm_scheduler", "W1"), NOW - timedelta(hours=2))
        status = pm_scheduler.status(now=NOW)
        assert status["running"] is True
        assert status["running_warehouses"] == [
            {"warehouse_id": "W1", "started_at": (NOW - timedelta(hours=2)).isoformat(), "overrunning": True},
        ]

    def test_escalation_scheduler_runs_evaluate(self, escalation_engine, store, run_lock, clock):
        scheduler = EscalationScheduler(escalation_engine, store, run_lock, interval_minutes=30, clock=clock)
        result = scheduler.run_now("W1")
        assert result.warehouse_id == "W1"
        assert scheduler.status()["job_id"] == "escalation_scheduler"
