# services/job_runner.py
import logging
import threading
from datetime import timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from services.errors import ConfigurationError, MaintenanceError, NotFoundError, RunInProgress
from services.models import AUTOMATIC, to_json

logger = logging.getLogger(__name__)

# Overlapping ticks must reach the per-warehouse run-lock instead of being
# rejected by APScheduler itself.
DEFAULT_MAX_INSTANCES = 3


class JobRunner:
    """Owns the BackgroundScheduler and the warehouse jobs registered with it."""

    def __init__(self, scheduler=None, max_instances=DEFAULT_MAX_INSTANCES):
        self.max_instances = max_instances
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=timezone.utc,
            job_defaults={"coalesce": True, "max_instances": max_instances},
        )
        self.jobs = {}
        self.started = False
        self._lock = threading.Lock()

    def _get(self, job_id):
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Unknown job '{job_id}'", job_id=job_id)
        return job

    @staticmethod
    def _validate_interval(minutes):
        try:
            minutes = int(minutes)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Interval must be a whole number of minutes, got {minutes!r}")
        if minutes <= 0:
            raise ConfigurationError("Interval must be a positive number of minutes", minutes=minutes)
        return minutes

    def register(self, job):
        self._validate_interval(job.interval_minutes)
        with self._lock:
            if job.job_id in self.jobs:
                raise ConfigurationError(f"Job '{job.job_id}' is already registered")
            self.jobs[job.job_id] = job
            job.runner = self
            self.scheduler.add_job(
                job.tick, 'interval', minutes=job.interval_minutes, id=job.job_id, name=job.description,
                max_instances=self.max_instances, coalesce=True, replace_existing=True,
                next_run_time=None,  # paused until start_all / set_job_enabled
            )
        logger.info(f"Registered job {job.job_id} (every {job.interval_minutes} min, enabled={job.enabled})")
        return job

    def start_all(self):
        with self._lock:
            if not self.scheduler.running:
                self.scheduler.start()
            self.started = True
            for job in self.jobs.values():
                if job.enabled:
                    job.start()
                    self.scheduler.resume_job(job.job_id)
        logger.info("Job runner started")

    def stop_all(self):
        """Stop future ticks for every job. Runs in flight finish normally."""
        with self._lock:
            for job in self.jobs.values():
                job.stop()
                self._pause(job.job_id)
            self.started = False
        logger.info("Job runner stopped")

    def _pause(self, job_id):
        try:
            self.scheduler.pause_job(job_id)
        except JobLookupError:
            logger.warning(f"Job {job_id} missing from scheduler")

    def set_job_enabled(self, job_id, enabled):
        """Enable or disable a job. An enabled job only ticks once the runner is started."""
        job = self._get(job_id)
        with self._lock:
            job.enabled = bool(enabled)
            if job.enabled:
                if self.started:
                    job.start()
                    self.scheduler.resume_job(job_id)
            else:
                job.stop()
                self._pause(job_id)
        logger.info(f"Job {job_id} {'enabled' if enabled else 'disabled'}")
        return job.status()

    def start_job(self, job_id):
        """Start a single job, starting the underlying scheduler if needed."""
        job = self._get(job_id)
        with self._lock:
            if not self.scheduler.running:
                self.scheduler.start()
            job.enabled = True
            job.start()
            self.scheduler.resume_job(job_id)
        return job.status()

    def stop_job(self, job_id):
        job = self._get(job_id)
        with self._lock:
            job.stop()
            self._pause(job_id)
        return job.status()

    def update_job_interval(self, job_id, minutes):
        """Change a job's interval in place; takes effect without a restart."""
        job = self._get(job_id)
        minutes = self._validate_interval(minutes)
        with self._lock:
            job.interval_minutes = minutes
            self.scheduler.reschedule_job(job_id, trigger='interval', minutes=minutes)
            if not job.active:
                # reschedule_job computes a fresh next run time, which would un-pause the job
                self._pause(job_id)
        logger.info(f"Job {job_id} interval set to {minutes} min")
        return job.status()

    def run_job_now(self, job_id, warehouse_id=None, triggered_by=AUTOMATIC):
        job = self._get(job_id)
        if warehouse_id:
            return {warehouse_id: job.run_now(warehouse_id, triggered_by=triggered_by).to_dict()}

        results = {}
        for warehouse in job.store.get_active_warehouses():
            try:
                results[warehouse.id] = job.run_now(warehouse.id, triggered_by=triggered_by).to_dict()
            except RunInProgress as e:
                results[warehouse.id] = {"skipped": True, "error": e.message}
            except MaintenanceError as e:
                logger.error(f"Manual {job_id} run failed for warehouse {warehouse.id}: {e.message}")
                results[warehouse.id] = e.to_dict()
        return results

    def next_run_time(self, job_id):
        scheduled = self.scheduler.get_job(job_id)
        if scheduled is None:
            return None
        return getattr(scheduled, "next_run_time", None)

    def status(self):
        return to_json({
            "scheduler_running": self.scheduler.running,
            "started": self.started,
            "jobs": {job_id: job.status() for job_id, job in self.jobs.items()},
        })

    def shutdown(self, wait=True):
        self.stop_all()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Job runner shut down")
