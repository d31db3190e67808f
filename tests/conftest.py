# tests/conftest.py
import os

# Keep the suite self-contained: no Elasticsearch, no SMTP, no background jobs
os.environ["AUDIT_TO_ELASTICSEARCH"] = "false"
os.environ["STORE_BACKEND"] = "memory"
os.environ["JOBS_AUTOSTART"] = "false"
os.environ["HOLIDAYS"] = ""
os.environ.setdefault("FLASK_ENV", "testing")

from datetime import datetime, timedelta, timezone

import pytest

from services.calendar_service import CalendarProvider
from services.escalation_engine import EscalationEngine
from services.models import (
    Equipment, PMTemplate, Profile, Warehouse, WorkOrder, WorkOrderStatus, WorkOrderType,
)
from services.pm_engine import PMEngine
from services.store import InMemoryStore

# Wednesday, 10:00 UTC
NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]

    def shutdown(self):
        pass


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_warehouse(Warehouse(id="W1", name="Main DC", timezone="UTC",
                                  operating_hours_start="08:00", operating_hours_end="17:00"))
    store.add_profile(Profile(id="u-admin", first_name="Ada", last_name="Admin", role="admin", warehouse_id="W1"))
    store.add_profile(Profile(id="u-sup", first_name="Sam", last_name="Super", role="supervisor", warehouse_id="W1"))
    store.add_profile(Profile(id="u-tech", first_name="Toni", last_name="Tech", role="technician", warehouse_id="W1"))
    store.add_equipment(Equipment(id="E1", asset_tag="FL-001", model="FL-3000", warehouse_id="W1"))
    store.add_equipment(Equipment(id="E2", asset_tag="FL-002", model="FL-3000", warehouse_id="W1",
                                  status="inactive"))
    store.add_template(PMTemplate(
        id="T1", warehouse_id="W1", equipment_model="FL-3000", component="Hydraulics", action="Inspect",
        frequency="7d", checklist=[("Hydraulics", "Inspect"), ("Forks", "Check wear")],
        created_at=NOW - timedelta(days=365),
    ))
    return store


@pytest.fixture
def calendar(store):
    return CalendarProvider(store, business_days=[0, 1, 2, 3, 4], hours_start="08:00", hours_end="17:00",
                            holidays=[], default_timezone="UTC")


@pytest.fixture
def pm_engine(store, notifier, calendar, clock):
    return PMEngine(store, notifier, calendar=calendar, clock=clock,
                    completion_grace=timedelta(hours=48), due_soon=timedelta(hours=24),
                    lookback=timedelta(days=90), compliance_target=95.0)


@pytest.fixture
def escalation_engine(store, notifier, calendar, clock):
    return EscalationEngine(store, notifier, calendar=calendar, clock=clock, fallback_assignee="u-tech",
                            tiers=["supervisor", "manager", "director"], default_max_level=3)


@pytest.fixture
def make_work_order(store):
    def _make(**overrides):
        values = dict(
            id=None,
            type=WorkOrderType.CORRECTIVE,
            status=WorkOrderStatus.NEW,
            priority="medium",
            warehouse_id="W1",
            created_at=NOW - timedelta(hours=1),
        )
        values.update(overrides)
        return store.create_work_order(WorkOrder(**values))
    return _make


@pytest.fixture
def app(store, notifier, clock):
    from app import create_app
    app = create_app(store=store, notifier=notifier, clock=clock, start_jobs=False, testing=True)
    yield app
    app.extensions["maintenance"].runner.shutdown(wait=False)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id="u-admin"):
        with client.session_transaction() as session:
            session["_user_id"] = user_id
            session["_fresh"] = True
        return client
    return _login
