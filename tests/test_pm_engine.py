"""
PM engine tests: generation, blackout deferral, missed counting and compliance.
"""

from datetime import timedelta
from unittest import mock

import pytest

from services.errors import ConfigurationError, DuplicateOpenWorkOrder, NotFoundError, TransientStoreError
from services.models import (
    BlackoutWindow, Equipment, PMTemplate, ScheduleState, WorkOrder, WorkOrderStatus, WorkOrderType,
)
from services.notification_service import PM_COMPLIANCE_ALERT, PM_GENERATED
from services.pm_engine import SKIP_BLACKOUT, SKIP_NOT_DUE, SKIP_OPEN_WORK_ORDER, compliance_percentage

from conftest import NOW


def seed_state(store, equipment_id="E1", template_id="T1", **kwargs):
    values = dict(next_due_at=NOW - timedelta(days=1), last_completed_at=NOW - timedelta(days=8))
    values.update(kwargs)
    state = ScheduleState(equipment_id=equipment_id, template_id=template_id, **values)
    store.save_schedule_state(state)
    return state


def seed_pm_order(store, scheduled_for, due_date, completed_at=None, equipment_id="E1", template_id="T1"):
    status = WorkOrderStatus.CLOSED if completed_at else WorkOrderStatus.NEW
    return store.create_work_order(WorkOrder(
        id=None, type=WorkOrderType.PREVENTIVE, status=status, priority="medium", warehouse_id="W1",
        equipment_id=equipment_id, template_id=template_id, created_at=scheduled_for,
        scheduled_for=scheduled_for, due_date=due_date, completed_at=completed_at,
    ))


def pm_orders(store, equipment_id="E1"):
    return [wo for wo in store.work_orders.values()
            if wo.type == WorkOrderType.PREVENTIVE and wo.equipment_id == equipment_id]


# =============================================================================
# GENERATION
# =============================================================================

class TestGenerateDue:
    def test_due_pair_gets_one_work_order(self, store, pm_engine, notifier):
        seed_state(store)

        result = pm_engine.generate_due("W1", NOW)

        assert len(result.created) == 1
        wo = result.created[0]
        assert wo.type == WorkOrderType.PREVENTIVE
        assert wo.status == WorkOrderStatus.NEW
        assert (wo.equipment_id, wo.template_id) == ("E1", "T1")
        assert [(i.component, i.action) for i in wo.checklist] == [("Hydraulics", "Inspect"), ("Forks", "Check wear")]
        assert wo.scheduled_for == NOW - timedelta(days=1)
        assert wo.due_date == NOW + timedelta(hours=48)
        assert wo.number.startswith("PM-202503121000-FL-001-")
        assert store.get_schedule_state("E1", "T1").missed_count == 0
        assert [e.payload["work_order_id"] for e in notifier.of_type(PM_GENERATED)] == [wo.id]

    def test_never_evaluated_pair_is_due_immediately(self, store, pm_engine):
        result = pm_engine.generate_due("W1", NOW)
        assert len(result.created) == 1
        state = store.get_schedule_state("E1", "T1")
        assert state.next_due_at == NOW

    def test_generation_is_idempotent(self, store, pm_engine):
        seed_state(store)
        pm_engine.generate_due("W1", NOW)
        second = pm_engine.generate_due("W1", NOW)

        assert second.created == []
        assert second.skipped[("E1", "T1")] == SKIP_OPEN_WORK_ORDER
        assert len(pm_orders(store)) == 1

    def test_not_due_is_skipped(self, store, pm_engine):
        seed_state(store, next_due_at=NOW + timedelta(days=2))
        result = pm_engine.generate_due("W1", NOW)
        assert result.created == []
        assert result.skipped[("E1", "T1")] == SKIP_NOT_DUE

    def test_inactive_equipment_is_left_alone(self, store, pm_engine):
        result = pm_engine.generate_due("W1", NOW)

        assert pm_orders(store, "E2") == []
        assert store.get_schedule_state("E2", "T1") is None
        assert result.skipped[("E2", "T1")] == "equipment_inactive"
        assert "E2" not in result.touched_equipment

    def test_retired_equipment_keeps_existing_state(self, store, pm_engine):
        store.add_equipment(Equipment(id="E3", asset_tag="FL-003", model="FL-3000", warehouse_id="W1",
                                      status="retired"))
        before = seed_state(store, equipment_id="E3")
        pm_engine.generate_due("W1", NOW)
        assert store.get_schedule_state("E3", "T1") == before
        assert pm_orders(store, "E3") == []

    def test_template_for_other_model_is_ignored(self, store, pm_engine):
        store.add_template(PMTemplate(id="T2", warehouse_id="W1", equipment_model="RT-9", component="Mast",
                                      action="Lubricate", frequency="monthly"))
        result = pm_engine.generate_due("W1", NOW)
        assert ("E1", "T2") not in result.skipped
        assert all(wo.template_id == "T1" for wo in result.created)

    def test_priority_comes_from_template(self, store, pm_engine):
        store.templates["T1"].custom_fields["priority"] = "high"
        result = pm_engine.generate_due("W1", NOW)
        assert result.created[0].priority.value == "high"

    def test_store_duplicate_is_treated_as_open(self, store, pm_engine):
        with mock.patch.object(store, "create_work_order",
                               side_effect=DuplicateOpenWorkOrder("already open")):
            result = pm_engine.generate_due("W1", NOW)
        assert result.created == []
        assert result.errors == []
        assert result.skipped[("E1", "T1")] == SKIP_OPEN_WORK_ORDER

    def test_failure_on_one_pair_does_not_stop_the_batch(self, store, pm_engine):
        store.add_equipment(Equipment(id="E4", asset_tag="FL-004", model="FL-3000", warehouse_id="W1"))
        real = store.get_open_work_order

        def flaky(equipment_id, template_id):
            if equipment_id == "E1":
                raise TransientStoreError("connection reset")
            return real(equipment_id, template_id)

        with mock.patch.object(store, "get_open_work_order", side_effect=flaky):
            result = pm_engine.generate_due("W1", NOW)

        assert [wo.equipment_id for wo in result.created] == ["E4"]
        assert len(result.errors) == 1
        assert result.errors[0]["equipment_id"] == "E1"
        assert result.errors[0]["type"] == "TransientStoreError"

    def test_notifier_failure_does_not_lose_work_order(self, store, pm_engine, notifier):
        with mock.patch.object(notifier, "emit", side_effect=RuntimeError("smtp down")):
            result = pm_engine.generate_due("W1", NOW)
        assert len(result.created) == 1
        assert result.errors == []


class TestBlackout:
    def test_blackout_defers_without_touching_state(self, store, pm_engine, clock):
        state = seed_state(store)
        store.add_blackout(BlackoutWindow(warehouse_id="W1", starts_at=NOW - timedelta(hours=1),
                                          ends_at=NOW + timedelta(hours=3), reason="inventory count"))

        result = pm_engine.generate_due("W1", NOW)

        assert result.created == []
        assert result.skipped[("E1", "T1")] == SKIP_BLACKOUT
        assert store.get_schedule_state("E1", "T1").next_due_at == state.next_due_at

        after = pm_engine.generate_due("W1", NOW + timedelta(hours=3))
        assert len(after.created) == 1
        assert after.created[0].scheduled_for == state.next_due_at


class TestScheduleTracking:
    def test_overdue_open_order_counts_one_miss(self, store, pm_engine):
        seed_state(store)
        pm_engine.generate_due("W1", NOW)

        later = NOW + timedelta(days=3)
        pm_engine.generate_due("W1", later)
        pm_engine.generate_due("W1", later + timedelta(hours=1))

        assert store.get_schedule_state("E1", "T1").missed_count == 1

    def test_completion_moves_next_due(self, store, pm_engine):
        seed_state(store)
        wo = pm_engine.generate_due("W1", NOW).created[0]
        completed_at = NOW + timedelta(hours=5)
        store.update_work_order(wo.id, {"status": WorkOrderStatus.COMPLETED, "completed_at": completed_at})

        state = pm_engine.sync_schedule("E1", "T1", completed_at)

        assert state.last_completed_at == completed_at
        assert state.next_due_at == completed_at + timedelta(days=7)
        result = pm_engine.generate_due("W1", NOW + timedelta(days=1))
        assert result.skipped[("E1", "T1")] == SKIP_NOT_DUE

    def test_generation_picks_up_completion_without_hook(self, store, pm_engine):
        seed_pm_order(store, NOW - timedelta(days=3), NOW - timedelta(days=1),
                      completed_at=NOW - timedelta(days=2))
        result = pm_engine.generate_due("W1", NOW)
        assert result.skipped[("E1", "T1")] == SKIP_NOT_DUE
        assert store.get_schedule_state("E1", "T1").next_due_at == NOW + timedelta(days=5)


# =============================================================================
# COMPLIANCE
# =============================================================================

class TestCompliance:
    @pytest.mark.parametrize("on_time,scheduled,expected", [
        (0, 0, 100.0),
        (3, 3, 100.0),
        (2, 3, 66.67),
        (0, 4, 0.0),
        (5, 4, 100.0),
    ])
    def test_percentage_is_bounded(self, on_time, scheduled, expected):
        assert compliance_percentage(on_time, scheduled) == expected

    def test_no_history_is_fully_compliant(self, pm_engine):
        report = pm_engine.recompute_compliance("E1", "W1", now=NOW)
        assert report["compliance_percentage"] == 100.0
        assert report["scheduled_count"] == 0
        assert report["missed_count"] == 0

    def test_counts_matured_orders_in_window(self, store, pm_engine):
        seed_state(store)
        # on time
        seed_pm_order(store, NOW - timedelta(days=30), NOW - timedelta(days=28), completed_at=NOW - timedelta(days=29))
        seed_pm_order(store, NOW - timedelta(days=20), NOW - timedelta(days=18), completed_at=NOW - timedelta(days=18))
        # late
        seed_pm_order(store, NOW - timedelta(days=10), NOW - timedelta(days=8), completed_at=NOW - timedelta(days=6))
        # outside the window
        seed_pm_order(store, NOW - timedelta(days=200), NOW - timedelta(days=198),
                      completed_at=NOW - timedelta(days=150))

        report = pm_engine.recompute_compliance("E1", "W1", now=NOW)

        assert report["scheduled_count"] == 3
        assert report["completed_on_time"] == 2
        assert report["missed_count"] == 1
        assert report["compliance_percentage"] == 66.67
        assert store.get_schedule_state("E1", "T1").compliance_percentage == 66.67

    def test_late_completion_is_missed_for_compliance_only(self, store, pm_engine):
        seed_state(store)
        seed_pm_order(store, NOW - timedelta(days=10), NOW - timedelta(days=8), completed_at=NOW - timedelta(days=6))

        report = pm_engine.recompute_compliance("E1", "W1", now=NOW)

        assert report["missed_count"] == 1
        assert pm_engine.get_schedule("E1", "T1", now=NOW)["missed_count"] == 0

    def test_open_order_not_yet_due_is_ignored(self, store, pm_engine):
        seed_pm_order(store, NOW - timedelta(days=1), NOW + timedelta(days=1))
        report = pm_engine.recompute_compliance("E1", "W1", now=NOW)
        assert report["scheduled_count"] == 0

    def test_overdue_open_order_counts_as_missed(self, store, pm_engine):
        seed_pm_order(store, NOW - timedelta(days=5), NOW - timedelta(days=3))
        report = pm_engine.recompute_compliance("E1", "W1", now=NOW)
        assert report["missed_count"] == 1
        assert report["compliance_percentage"] == 0.0

    def test_custom_lookback(self, store, pm_engine):
        seed_pm_order(store, NOW - timedelta(days=20), NOW - timedelta(days=18))
        report = pm_engine.recompute_compliance("E1", "W1", lookback_window=timedelta(days=7), now=NOW)
        assert report["scheduled_count"] == 0

    def test_unknown_equipment(self, pm_engine):
        with pytest.raises(NotFoundError):
            pm_engine.recompute_compliance("nope", "W1", now=NOW)

    def test_equipment_from_other_warehouse(self, pm_engine):
        with pytest.raises(NotFoundError):
            pm_engine.recompute_compliance("E1", "W9", now=NOW)

    def test_lookback_must_be_positive(self, pm_engine):
        with pytest.raises(ConfigurationError):
            pm_engine.recompute_compliance("E1", "W1", lookback_window=timedelta(0), now=NOW)


# =============================================================================
# ORCHESTRATION
# =============================================================================

class TestRunAutomation:
    def test_requires_warehouse(self, pm_engine):
        with pytest.raises(ConfigurationError):
            pm_engine.run_automation("", NOW)

    def test_unknown_warehouse(self, pm_engine):
        with pytest.raises(NotFoundError):
            pm_engine.run_automation("W9", NOW)

    def test_summary(self, store, pm_engine):
        seed_state(store)
        summary = pm_engine.run_automation("W1", NOW)

        assert summary.generated == 1
        assert summary.skip_reasons == {"equipment_inactive": 1}
        assert summary.errors == []
        assert set(summary.compliance) == {"E1"}
        assert summary.to_dict()["work_order_ids"] == summary.work_order_ids

    def test_compliance_alert_for_missed_work(self, store, pm_engine, notifier):
        seed_state(store)
        seed_pm_order(store, NOW - timedelta(days=10), NOW - timedelta(days=8))

        summary = pm_engine.run_automation("W1", NOW)

        assert summary.generated == 0
        alerts = notifier.of_type(PM_COMPLIANCE_ALERT)
        assert len(alerts) == 1
        assert alerts[0].payload["equipment_id"] == "E1"
        assert alerts[0].payload["missed_count"] == 1

    def test_no_alert_when_compliant(self, store, pm_engine, notifier):
        pm_engine.run_automation("W1", NOW)
        assert notifier.of_type(PM_COMPLIANCE_ALERT) == []

    def test_compliance_failure_is_recorded(self, store, pm_engine):
        with mock.patch.object(pm_engine, "recompute_compliance", side_effect=TransientStoreError("timeout")):
            summary = pm_engine.run_automation("W1", NOW)
        assert summary.generated == 1
        assert summary.errors[0]["stage"] == "compliance"


# =============================================================================
# READ-ONLY VIEWS
# =============================================================================

class TestViews:
    def test_schedule_status_due_and_overdue(self, store, pm_engine):
        seed_state(store, next_due_at=NOW + timedelta(hours=12))
        assert pm_engine.get_schedule("E1", "T1", NOW)["compliance_status"] == "due"

        seed_state(store, next_due_at=NOW + timedelta(days=3))
        assert pm_engine.get_schedule("E1", "T1", NOW)["compliance_status"] == "compliant"

        seed_state(store, next_due_at=NOW - timedelta(days=3))
        view = pm_engine.get_schedule("E1", "T1", NOW)
        assert view["compliance_status"] == "overdue"
        assert view["is_overdue"]

    def test_schedule_unknown_template(self, pm_engine):
        with pytest.raises(NotFoundError):
            pm_engine.get_schedule("E1", "T404", NOW)

    def test_upcoming_sorted_by_priority_then_date(self, store, pm_engine):
        store.add_equipment(Equipment(id="E5", asset_tag="FL-005", model="FL-3000", warehouse_id="W1"))
        store.add_template(PMTemplate(id="T3", warehouse_id="W1", equipment_model="FL-3000", component="Brakes",
                                      action="Test", frequency="monthly", custom_fields={"priority": "critical"}))
        seed_state(store, next_due_at=NOW + timedelta(days=2))
        seed_state(store, equipment_id="E5", next_due_at=NOW + timedelta(days=1))
        seed_state(store, template_id="T3", next_due_at=NOW + timedelta(days=5))
        seed_state(store, equipment_id="E5", template_id="T3", next_due_at=NOW + timedelta(days=30))

        view = pm_engine.upcoming("W1", NOW, NOW + timedelta(days=7))

        assert [(s["equipment_id"], s["template_id"]) for s in view["scheduled"]] == [
            ("E1", "T3"), ("E5", "T1"), ("E1", "T1"),
        ]
        assert view["statistics"]["total_scheduled"] == 3
        assert view["statistics"]["by_priority"] == {"critical": 1, "medium": 2}
        assert view["statistics"]["by_model"] == {"FL-3000": 3}

    def test_upcoming_lists_active_equipment_only(self, store, pm_engine):
        store.add_equipment(Equipment(id="E6", asset_tag="FL-006", model="FL-3000", warehouse_id="W1",
                                      status="maintenance"))
        seed_state(store, equipment_id="E6", next_due_at=NOW + timedelta(days=1))

        view = pm_engine.upcoming("W1", NOW, NOW + timedelta(days=7))

        assert {s["equipment_id"] for s in view["scheduled"]} == {"E1"}
        assert [e.id for e in store.get_active_equipment("W1")] == ["E1"]

    def test_upcoming_rejects_reversed_range(self, pm_engine):
        with pytest.raises(ConfigurationError):
            pm_engine.upcoming("W1", NOW, NOW - timedelta(days=1))
