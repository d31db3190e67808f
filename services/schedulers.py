# services/schedulers.py
"""
Timer-driven wrappers around the PM and escalation engines.

Each scheduled tick walks the active warehouses and runs the engine once per
warehouse under a run-lock keyed by (job, warehouse). A warehouse whose
previous run is still executing is skipped and logged, never queued.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import config
from services.elasticsearch_client import get_es
from services.errors import ConfigurationError, NotFoundError, RunInProgress
from services.logging_service import log_audit
from services.models import AUTOMATIC, to_json, utcnow

logger = logging.getLogger(__name__)


class RunLock:
    """Set of held (job_id, warehouse_id) keys guarded by a mutex."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held: Dict[tuple, datetime] = {}

    def acquire(self, key, now) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held[key] = now
            return True

    def release(self, key):
        with self._lock:
            self._held.pop(key, None)

    def started_at(self, key) -> Optional[datetime]:
        with self._lock:
            return self._held.get(key)

    def held(self, job_id=None) -> Dict[tuple, datetime]:
        with self._lock:
            return {k: v for k, v in self._held.items() if job_id is None or k[0] == job_id}


@dataclass
class RunRecord:
    warehouse_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    ok: bool = True
    triggered_by: str = AUTOMATIC
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class WarehouseJob:
    """Base class for a per-warehouse scheduled job."""

    job_id = None
    description = ""

    def __init__(self, store, run_lock: RunLock, interval_minutes: int, enabled: bool = True,
                 clock: Callable[[], datetime] = utcnow, warn_after: timedelta = None):
        if interval_minutes is None or int(interval_minutes) <= 0:
            raise ConfigurationError(f"Interval for {self.job_id} must be a positive number of minutes")
        self.store = store
        self.run_lock = run_lock
        self.interval_minutes = int(interval_minutes)
        self.enabled = enabled
        self.clock = clock
        self.warn_after = warn_after if warn_after is not None else config.RUN_WARN_AFTER
        self.runner = None
        self.active = False
        self.last_run_at: Optional[datetime] = None
        self.last_results: Dict[str, RunRecord] = {}
        self.skipped_ticks = 0
        self._state_lock = threading.Lock()

    def execute(self, warehouse_id, now):
        raise NotImplementedError

    # -- lifecycle --------------------------------------------------------
    def start(self):
        self.active = True
        logger.info(f"{self.job_id} started (every {self.interval_minutes} min)")

    def stop(self):
        """Prevent future ticks. A run already in flight is left to finish."""
        self.active = False
        logger.info(f"{self.job_id} stopped")

    # -- runs -------------------------------------------------------------
    def _key(self, warehouse_id):
        return (self.job_id, warehouse_id)

    def _run_locked(self, warehouse_id, now, triggered_by):
        record = RunRecord(warehouse_id=warehouse_id, started_at=now, triggered_by=triggered_by)
        try:
            result = self.execute(warehouse_id, now)
        except Exception as e:
            record.ok = False
            record.error = str(e)
            record.finished_at = self.clock()
            self._record(record)
            raise
        record.summary = result.to_dict()
        record.ok = not result.errors
        record.finished_at = self.clock()
        self._record(record)
        return result

    def _record(self, record):
        with self._state_lock:
            self.last_results[record.warehouse_id] = record
        log_audit(get_es(), f"{self.job_id}_run", record.triggered_by,
                  details={"ok": record.ok, "error": record.error,
                           "errors": len((record.summary or {}).get("errors", []))},
                  warehouse_id=record.warehouse_id)

    def tick(self):
        """Scheduled entry point. Errors are recorded and logged, never raised."""
        if not self.active:
            return
        tick_at = self.clock()
        with self._state_lock:
            self.last_run_at = tick_at
        try:
            warehouses = self.store.get_active_warehouses()
        except Exception:
            logger.exception(f"{self.job_id}: could not load warehouses")
            return

        for index, warehouse in enumerate(warehouses):
            if not self.active:
                remaining = [w.id for w in warehouses[index:]]
                logger.info(f"{self.job_id} stopped mid-tick; skipped warehouse(s) {', '.join(remaining)}")
                break
            now = self.clock()
            key = self._key(warehouse.id)
            if not self.run_lock.acquire(key, now):
                self._log_busy(warehouse.id, now)
                continue
            try:
                self._run_locked(warehouse.id, now, AUTOMATIC)
            except Exception:
                logger.exception(f"{self.job_id} failed for warehouse {warehouse.id}")
            finally:
                self.run_lock.release(key)

    def _log_busy(self, warehouse_id, now):
        with self._state_lock:
            self.skipped_ticks += 1
        started = self.run_lock.started_at(self._key(warehouse_id))
        if started is not None and now - started > self.warn_after:
            logger.warning(f"{self.job_id}: run for warehouse {warehouse_id} still executing since "
                           f"{started.isoformat()}; tick skipped")
        else:
            logger.info(f"{self.job_id}: warehouse {warehouse_id} busy, tick skipped")

    def run_now(self, warehouse_id, triggered_by=AUTOMATIC, now=None):
        """Out-of-band run for one warehouse under the same lock. Errors propagate."""
        if not warehouse_id:
            raise ConfigurationError("warehouse_id is required")
        if self.store.get_warehouse(warehouse_id) is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)
        now = now or self.clock()
        key = self._key(warehouse_id)
        if not self.run_lock.acquire(key, now):
            raise RunInProgress(f"{self.job_id} is already running for warehouse {warehouse_id}",
                                job_id=self.job_id, warehouse_id=warehouse_id)
        try:
            return self._run_locked(warehouse_id, now, triggered_by)
        finally:
            self.run_lock.release(key)

    # -- reporting --------------------------------------------------------
    def next_run_at(self):
        return self.runner.next_run_time(self.job_id) if self.runner else None

    def status(self, now=None):
        now = now or self.clock()
        in_flight = self.run_lock.held(self.job_id)
        with self._state_lock:
            last_results = {wh: to_json(rec) for wh, rec in self.last_results.items()}
            last_run_at = self.last_run_at
            skipped = self.skipped_ticks
        return {
            "job_id": self.job_id,
            "description": self.description,
            "enabled": self.enabled,
            "active": self.active,
            "interval_minutes": self.interval_minutes,
            "last_run_at": last_run_at.isoformat() if last_run_at else None,
            "next_run_at": to_json(self.next_run_at()),
            "running": bool(in_flight),
            "running_warehouses": [
                {
                    "warehouse_id": key[1],
                    "started_at": started.isoformat(),
                    "overrunning": now - started > self.warn_after,
                }
                for key, started in sorted(in_flight.items())
            ],
            "skipped_ticks": skipped,
            "last_results": last_results,
        }


class PMScheduler(WarehouseJob):
    job_id = "pm_scheduler"
    description = "Generate due preventive maintenance work orders and refresh compliance"

    def __init__(self, engine, store, run_lock, interval_minutes=None, **kwargs):
        super().__init__(store, run_lock,
                         interval_minutes if interval_minutes is not None else config.PM_SCHEDULER_INTERVAL_MINUTES,
                         **kwargs)
        self.engine = engine

    def execute(self, warehouse_id, now):
        return self.engine.run_automation(warehouse_id, now)


class EscalationScheduler(WarehouseJob):
    job_id = "escalation_scheduler"
    description = "Escalate open work orders that have aged past their rule threshold"

    def __init__(self, engine, store, run_lock, interval_minutes=None, **kwargs):
        super().__init__(store, run_lock,
                         interval_minutes if interval_minutes is not None else config.ESCALATION_INTERVAL_MINUTES,
                         **kwargs)
        self.engine = engine

    def execute(self, warehouse_id, now):
        return self.engine.evaluate(warehouse_id, now)
