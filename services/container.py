# services/container.py
"""Explicit wiring of the store, engines, schedulers and job runner."""

import logging
from dataclasses import dataclass
from typing import Callable

import config
from services.calendar_service import CalendarProvider
from services.email_service import smtp_configured
from services.escalation_engine import EscalationEngine
from services.job_runner import JobRunner
from services.models import utcnow
from services.notification_service import EmailNotificationDispatcher, LoggingNotificationDispatcher
from services.pm_engine import PMEngine
from services.schedulers import EscalationScheduler, PMScheduler, RunLock
from services.store import InMemoryStore
from services.work_order_service import WorkOrderService

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceServices:
    store: object
    notifier: object
    calendar: CalendarProvider
    pm_engine: PMEngine
    escalation_engine: EscalationEngine
    work_orders: WorkOrderService
    run_lock: RunLock
    pm_scheduler: PMScheduler
    escalation_scheduler: EscalationScheduler
    runner: JobRunner

    def shutdown(self):
        self.runner.shutdown()
        self.notifier.shutdown()
        self.store.close()


def default_store():
    if config.STORE_BACKEND == "memory":
        logger.warning("Using the in-memory store; data is lost on restart")
        return InMemoryStore()
    from services.pg_store import PostgresStore
    return PostgresStore()


def default_notifier():
    if smtp_configured() and config.NOTIFICATION_RECIPIENTS:
        return EmailNotificationDispatcher(config.NOTIFICATION_RECIPIENTS)
    logger.info("SMTP not configured; notifications are written to the audit log only")
    return LoggingNotificationDispatcher()


def build_services(store=None, notifier=None, clock: Callable = utcnow, runner: JobRunner = None,
                   calendar: CalendarProvider = None) -> MaintenanceServices:
    store = store if store is not None else default_store()
    notifier = notifier if notifier is not None else default_notifier()
    calendar = calendar or CalendarProvider(store)

    pm_engine = PMEngine(store, notifier, calendar=calendar, clock=clock)
    escalation_engine = EscalationEngine(store, notifier, calendar=calendar, clock=clock)
    run_lock = RunLock()
    pm_scheduler = PMScheduler(pm_engine, store, run_lock, enabled=config.PM_SCHEDULER_ENABLED, clock=clock)
    escalation_scheduler = EscalationScheduler(escalation_engine, store, run_lock,
                                               enabled=config.ESCALATION_SCHEDULER_ENABLED, clock=clock)
    runner = runner or JobRunner()
    runner.register(pm_scheduler)
    runner.register(escalation_scheduler)

    return MaintenanceServices(
        store=store,
        notifier=notifier,
        calendar=calendar,
        pm_engine=pm_engine,
        escalation_engine=escalation_engine,
        work_orders=WorkOrderService(store, pm_engine=pm_engine, clock=clock),
        run_lock=run_lock,
        pm_scheduler=pm_scheduler,
        escalation_scheduler=escalation_scheduler,
        runner=runner,
    )
