# services/pm_engine.py
"""
Preventive maintenance generation and compliance.

The engine is driven entirely by its collaborators: a store, a notification
dispatcher, a calendar provider and a clock. Every operation takes ``now``
so runs are reproducible.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import config
from services.calendar_service import CalendarProvider
from services.errors import ConfigurationError, DuplicateOpenWorkOrder, NotFoundError
from services.models import (
    PRIORITY_WEIGHTS, SKIPPED_EQUIPMENT_STATUSES, Event, Priority, ScheduleState,
    WorkOrder, WorkOrderStatus, WorkOrderType, ensure_utc, to_json, utcnow,
)
from services.notification_service import PM_COMPLIANCE_ALERT, PM_GENERATED

logger = logging.getLogger(__name__)

SKIP_BLACKOUT = "blackout"
SKIP_OPEN_WORK_ORDER = "open_work_order"
SKIP_NOT_DUE = "not_due"


@dataclass
class GenerationResult:
    created: List[WorkOrder] = field(default_factory=list)
    skipped: Dict[Tuple[str, str], str] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    touched_equipment: Set[str] = field(default_factory=set)

    def skip(self, equipment_id, template_id, reason):
        self.skipped[(equipment_id, template_id)] = reason

    def to_dict(self):
        return {
            "created": [to_json(wo) for wo in self.created],
            "skipped": [
                {"equipment_id": eq, "template_id": tpl, "reason": reason}
                for (eq, tpl), reason in self.skipped.items()
            ],
            "errors": self.errors,
        }


@dataclass
class AutomationSummary:
    warehouse_id: str
    generated: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    work_order_ids: List[str] = field(default_factory=list)
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    compliance: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ran_at: Optional[datetime] = None

    def to_dict(self):
        return to_json({
            "warehouse_id": self.warehouse_id,
            "generated": self.generated,
            "skipped": self.skipped,
            "errors": self.errors,
            "work_order_ids": self.work_order_ids,
            "skip_reasons": self.skip_reasons,
            "compliance": self.compliance,
            "ran_at": self.ran_at,
        })


def compliance_percentage(on_time, scheduled):
    if scheduled <= 0:
        return 100.0
    return round(max(0.0, min(100.0, on_time * 100.0 / scheduled)), 2)


def _error_entry(exc, **ids):
    entry = dict(ids)
    entry["error"] = str(exc)
    entry["type"] = type(exc).__name__
    return entry


class PMEngine:
    def __init__(self, store, notifier, calendar: Optional[CalendarProvider] = None,
                 clock: Callable[[], datetime] = utcnow,
                 completion_grace: timedelta = None, due_soon: timedelta = None,
                 lookback: timedelta = None, compliance_target: float = None):
        self.store = store
        self.notifier = notifier
        self.calendar = calendar or CalendarProvider(store)
        self.clock = clock
        self.completion_grace = completion_grace if completion_grace is not None else config.PM_COMPLETION_GRACE
        self.due_soon = due_soon if due_soon is not None else config.PM_DUE_SOON
        self.lookback = lookback if lookback is not None else config.PM_COMPLIANCE_LOOKBACK
        self.compliance_target = (compliance_target if compliance_target is not None
                                  else config.PM_COMPLIANCE_TARGET)

    def _now(self, now):
        return ensure_utc(now) if now is not None else self.clock()

    def _emit(self, event_type, payload, warehouse_id, now):
        try:
            self.notifier.emit(Event(type=event_type, payload=payload, warehouse_id=warehouse_id, occurred_at=now))
        except Exception:
            logger.exception(f"Notifier rejected {event_type} event")

    # ------------------------------------------------------------------
    # Schedule state
    # ------------------------------------------------------------------
    def _initial_state(self, equipment, template, now):
        return ScheduleState(equipment_id=equipment.id, template_id=template.id, next_due_at=now, updated_at=now)

    def _sync_state(self, state, template):
        """Move the state forward to the newest completed PM work order. Returns True when changed."""
        last = self.store.get_last_completed_work_order(state.equipment_id, state.template_id)
        if last is None or last.completed_at is None:
            return False
        if state.last_completed_at is not None and last.completed_at <= state.last_completed_at:
            return False
        state.last_completed_at = last.completed_at
        state.next_due_at = template.frequency.next_after(last.completed_at)
        return True

    def _load_state(self, equipment, template, now):
        state = self.store.get_schedule_state(equipment.id, template.id)
        dirty = False
        if state is None:
            state = self._initial_state(equipment, template, now)
            dirty = True
        if self._sync_state(state, template):
            dirty = True
        return state, dirty

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate_due(self, warehouse_id: str, now: datetime = None) -> GenerationResult:
        now = self._now(now)
        result = GenerationResult()
        equipment_list = self.store.get_equipment(warehouse_id)
        templates = self.store.get_active_templates(warehouse_id)
        blackout = self.calendar.blackout_at(warehouse_id, now)
        if blackout is not None:
            logger.info(f"Warehouse {warehouse_id} is in a blackout window ({blackout.reason or 'unspecified'}); "
                        f"PM due checks deferred")

        for equipment in equipment_list:
            for template in templates:
                if not template.matches(equipment):
                    continue
                if equipment.status in SKIPPED_EQUIPMENT_STATUSES:
                    result.skip(equipment.id, template.id, f"equipment_{equipment.status.value}")
                    continue
                if blackout is not None:
                    result.skip(equipment.id, template.id, SKIP_BLACKOUT)
                    continue
                try:
                    result.touched_equipment.add(equipment.id)
                    created, reason = self._evaluate_pair(warehouse_id, equipment, template, now)
                    if created is not None:
                        result.created.append(created)
                    else:
                        result.skip(equipment.id, template.id, reason)
                except Exception as e:
                    logger.exception(f"PM generation failed for equipment {equipment.id} / template {template.id}")
                    result.errors.append(_error_entry(e, equipment_id=equipment.id, template_id=template.id))

        if result.created:
            logger.info(f"Generated {len(result.created)} PM work order(s) for warehouse {warehouse_id}")
        return result

    def _evaluate_pair(self, warehouse_id, equipment, template, now):
        state, dirty = self._load_state(equipment, template, now)

        open_wo = self.store.get_open_work_order(equipment.id, template.id)
        if open_wo is not None:
            if self._record_missed(state, open_wo, now):
                dirty = True
            self._save_if(dirty, state, now)
            return None, SKIP_OPEN_WORK_ORDER

        if state.next_due_at > now:
            self._save_if(dirty, state, now)
            return None, SKIP_NOT_DUE

        work_order = WorkOrder(
            id=None,
            number=f"PM-{now:%Y%m%d%H%M}-{equipment.asset_tag}-{template.id[:8]}",
            type=WorkOrderType.PREVENTIVE,
            status=WorkOrderStatus.NEW,
            priority=template.priority,
            warehouse_id=warehouse_id,
            equipment_id=equipment.id,
            template_id=template.id,
            description=template.description or f"{template.component}: {template.action}",
            checklist=template.checklist_items(),
            created_at=now,
            status_changed_at=now,
            scheduled_for=state.next_due_at,
            due_date=max(state.next_due_at, now) + self.completion_grace,
        )
        try:
            created = self.store.create_work_order(work_order)
        except DuplicateOpenWorkOrder:
            logger.info(f"Open PM work order already exists for {equipment.id}/{template.id}")
            self._save_if(dirty, state, now)
            return None, SKIP_OPEN_WORK_ORDER

        self._save_if(dirty, state, now)
        self._emit(PM_GENERATED, {
            "work_order_id": created.id,
            "number": created.number,
            "equipment_id": equipment.id,
            "asset_tag": equipment.asset_tag,
            "template_id": template.id,
            "due_date": created.due_date,
        }, warehouse_id, now)
        return created, None

    def sync_schedule(self, equipment_id: str, template_id: str, now: datetime = None) -> Optional[ScheduleState]:
        """Pull a fresh completion into the pair's schedule state (work-order completion hook)."""
        now = self._now(now)
        equipment = self.store.get_equipment_by_id(equipment_id)
        template = self.store.get_template(template_id)
        if equipment is None or template is None:
            return None
        state, dirty = self._load_state(equipment, template, now)
        self._save_if(dirty, state, now)
        return state

    def _record_missed(self, state, open_wo, now):
        if open_wo.due_date is None or open_wo.due_date >= now:
            return False
        if state.last_missed_work_order_id == open_wo.id:
            return False
        state.missed_count += 1
        state.last_missed_work_order_id = open_wo.id
        logger.warning(f"PM work order {open_wo.number or open_wo.id} missed its due date")
        return True

    def _save_if(self, dirty, state, now):
        if dirty:
            state.updated_at = now
            self.store.save_schedule_state(state)

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------
    def _equipment_in_warehouse(self, equipment_id, warehouse_id):
        equipment = self.store.get_equipment_by_id(equipment_id)
        if equipment is None or equipment.warehouse_id != warehouse_id:
            raise NotFoundError(f"Equipment {equipment_id} not found", equipment_id=equipment_id,
                                warehouse_id=warehouse_id)
        return equipment

    def recompute_compliance(self, equipment_id: str, warehouse_id: str,
                             lookback_window: timedelta = None, now: datetime = None) -> Dict[str, Any]:
        """
        On-time completion rate of matured PM occurrences inside the lookback window.

        ``missed_count`` here is every matured occurrence not completed on time,
        late completions included. It is not ``ScheduleState.missed_count``, which
        counts open work orders whose due date passed (see ``get_schedule``).
        """
        now = self._now(now)
        lookback = lookback_window if lookback_window is not None else self.lookback
        if lookback <= timedelta(0):
            raise ConfigurationError("Lookback window must be positive")
        equipment = self._equipment_in_warehouse(equipment_id, warehouse_id)
        window_start = now - lookback

        scheduled = on_time = 0
        last_completed = next_due = None
        for template in self.store.get_active_templates(warehouse_id):
            if not template.matches(equipment):
                continue
            orders = self.store.get_preventive_work_orders(equipment.id, template.id, window_start, now)
            matured = [o for o in orders if o.completed_at is not None or (o.due_date and o.due_date < now)]
            pair_on_time = sum(
                1 for o in matured
                if o.completed_at is not None and (o.due_date is None or o.completed_at <= o.due_date)
            )
            scheduled += len(matured)
            on_time += pair_on_time

            state = self.store.get_schedule_state(equipment.id, template.id)
            if state is None:
                continue
            state.compliance_percentage = compliance_percentage(pair_on_time, len(matured))
            state.updated_at = now
            self.store.save_schedule_state(state)
            if state.last_completed_at and (last_completed is None or state.last_completed_at > last_completed):
                last_completed = state.last_completed_at
            if next_due is None or state.next_due_at < next_due:
                next_due = state.next_due_at

        return {
            "equipment_id": equipment.id,
            "compliance_percentage": compliance_percentage(on_time, scheduled),
            "missed_count": scheduled - on_time,
            "scheduled_count": scheduled,
            "completed_on_time": on_time,
            "last_completed_at": last_completed,
            "next_due_at": next_due,
        }

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------
    def run_automation(self, warehouse_id: str, now: datetime = None) -> AutomationSummary:
        if not warehouse_id:
            raise ConfigurationError("warehouse_id is required")
        if self.store.get_warehouse(warehouse_id) is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)
        now = self._now(now)

        result = self.generate_due(warehouse_id, now)
        summary = AutomationSummary(
            warehouse_id=warehouse_id,
            generated=len(result.created),
            skipped=len(result.skipped),
            errors=list(result.errors),
            work_order_ids=[wo.id for wo in result.created],
            ran_at=now,
        )
        for reason in result.skipped.values():
            summary.skip_reasons[reason] = summary.skip_reasons.get(reason, 0) + 1

        for equipment_id in sorted(result.touched_equipment):
            try:
                report = self.recompute_compliance(equipment_id, warehouse_id, self.lookback, now)
            except Exception as e:
                logger.exception(f"Compliance recompute failed for equipment {equipment_id}")
                summary.errors.append(_error_entry(e, equipment_id=equipment_id, stage="compliance"))
                continue
            summary.compliance[equipment_id] = report
            if report["compliance_percentage"] < self.compliance_target and report["missed_count"] > 0:
                self._emit(PM_COMPLIANCE_ALERT, {
                    "equipment_id": equipment_id,
                    "missed_count": report["missed_count"],
                    "compliance_percentage": report["compliance_percentage"],
                }, warehouse_id, now)

        logger.info(f"PM automation for warehouse {warehouse_id}: generated={summary.generated} "
                    f"skipped={summary.skipped} errors={len(summary.errors)}")
        return summary

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def _view_state(self, equipment, template, now):
        state = self.store.get_schedule_state(equipment.id, template.id) or self._initial_state(equipment, template, now)
        self._sync_state(state, template)
        return state

    def get_schedule(self, equipment_id: str, template_id: str, now: datetime = None) -> Dict[str, Any]:
        """Read-only view of one pair. ``missed_count`` is the schedule state counter of overdue open orders."""
        now = self._now(now)
        equipment = self.store.get_equipment_by_id(equipment_id)
        if equipment is None:
            raise NotFoundError(f"Equipment {equipment_id} not found", equipment_id=equipment_id)
        template = self.store.get_template(template_id)
        if template is None or template.warehouse_id != equipment.warehouse_id:
            raise NotFoundError(f"PM template {template_id} not found", template_id=template_id)

        state = self._view_state(equipment, template, now)
        open_wo = self.store.get_open_work_order(equipment.id, template.id)
        if open_wo is not None:
            is_overdue = open_wo.due_date is not None and open_wo.due_date < now
        else:
            is_overdue = state.next_due_at + self.completion_grace < now

        if is_overdue:
            status = "overdue"
        elif state.next_due_at <= now + self.due_soon:
            status = "due"
        else:
            status = "compliant"

        return {
            "equipment_id": equipment.id,
            "template_id": template.id,
            "frequency": str(template.frequency),
            "next_due_at": state.next_due_at,
            "last_completed_at": state.last_completed_at,
            "missed_count": state.missed_count,
            "compliance_percentage": state.compliance_percentage,
            "open_work_order_id": open_wo.id if open_wo else None,
            "is_overdue": is_overdue,
            "compliance_status": status,
        }

    def upcoming(self, warehouse_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        """Pairs falling due inside [start, end], highest priority first, then by date."""
        start, end = ensure_utc(start), ensure_utc(end)
        if end < start:
            raise ConfigurationError("end must not be before start")
        scheduled = []
        by_priority: Dict[str, int] = {}
        by_model: Dict[str, int] = {}
        templates = self.store.get_active_templates(warehouse_id)
        for equipment in self.store.get_active_equipment(warehouse_id):
            for template in templates:
                if not template.matches(equipment):
                    continue
                state = self._view_state(equipment, template, start)
                if not (start <= state.next_due_at <= end):
                    continue
                priority = template.priority
                scheduled.append({
                    "equipment_id": equipment.id,
                    "asset_tag": equipment.asset_tag,
                    "template_id": template.id,
                    "component": template.component,
                    "action": template.action,
                    "scheduled_date": state.next_due_at,
                    "priority": priority.value,
                    "estimated_duration": template.estimated_duration,
                    "has_open_work_order": self.store.get_open_work_order(equipment.id, template.id) is not None,
                })
                by_priority[priority.value] = by_priority.get(priority.value, 0) + 1
                by_model[equipment.model] = by_model.get(equipment.model, 0) + 1

        scheduled.sort(key=lambda s: (-PRIORITY_WEIGHTS[Priority(s["priority"])], s["scheduled_date"]))
        return {
            "scheduled": scheduled,
            "statistics": {
                "total_scheduled": len(scheduled),
                "by_priority": by_priority,
                "by_model": by_model,
            },
        }
