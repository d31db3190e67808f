# services/store.py
"""
Store contract used by the PM and escalation engines, plus an in-memory
implementation for tests, demos and single-process deployments.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from services.errors import DuplicateOpenWorkOrder, NotFoundError
from services.models import (
    BlackoutWindow, Equipment, EquipmentStatus, EscalationRecord, EscalationRule,
    OPEN_STATUSES, PMTemplate, Profile, ScheduleState, Warehouse, WorkOrder,
    WorkOrderStatus, WorkOrderType,
)


class MaintenanceStore(ABC):
    """Persistence operations the automation core depends on."""

    # Warehouses / equipment / profiles
    @abstractmethod
    def get_active_warehouses(self) -> List[Warehouse]: ...

    @abstractmethod
    def get_warehouse(self, warehouse_id: str) -> Optional[Warehouse]: ...

    @abstractmethod
    def get_equipment(self, warehouse_id: str) -> List[Equipment]:
        """All equipment in the warehouse regardless of status."""

    def get_active_equipment(self, warehouse_id: str) -> List[Equipment]:
        return [e for e in self.get_equipment(warehouse_id) if e.status == EquipmentStatus.ACTIVE]

    @abstractmethod
    def get_equipment_by_id(self, equipment_id: str) -> Optional[Equipment]: ...

    @abstractmethod
    def get_profile(self, profile_id: str) -> Optional[Profile]: ...

    # PM templates and schedule state
    @abstractmethod
    def get_active_templates(self, warehouse_id: str) -> List[PMTemplate]: ...

    @abstractmethod
    def get_template(self, template_id: str) -> Optional[PMTemplate]: ...

    @abstractmethod
    def get_schedule_state(self, equipment_id: str, template_id: str) -> Optional[ScheduleState]: ...

    @abstractmethod
    def save_schedule_state(self, state: ScheduleState) -> ScheduleState: ...

    @abstractmethod
    def get_blackout_windows(self, warehouse_id: str) -> List[BlackoutWindow]: ...

    # Work orders
    @abstractmethod
    def get_open_work_order(self, equipment_id: str, template_id: str) -> Optional[WorkOrder]:
        """The open preventive work order for the pair, if any."""

    @abstractmethod
    def get_last_completed_work_order(self, equipment_id: str, template_id: str) -> Optional[WorkOrder]: ...

    @abstractmethod
    def get_preventive_work_orders(self, equipment_id: str, template_id: str,
                                   scheduled_from: datetime, scheduled_to: datetime) -> List[WorkOrder]: ...

    @abstractmethod
    def create_work_order(self, work_order: WorkOrder) -> WorkOrder:
        """Persist a new work order. Raises DuplicateOpenWorkOrder for a second open PM order."""

    @abstractmethod
    def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]: ...

    @abstractmethod
    def update_work_order(self, work_order_id: str, patch: Dict[str, Any]) -> WorkOrder: ...

    @abstractmethod
    def get_open_work_orders(self, warehouse_id: str, statuses) -> List[WorkOrder]: ...

    # Escalation
    @abstractmethod
    def get_escalation_rules(self, warehouse_id: str, include_inactive: bool = False) -> List[EscalationRule]: ...

    @abstractmethod
    def get_escalation_rule(self, rule_id: str) -> Optional[EscalationRule]: ...

    @abstractmethod
    def create_escalation_rule(self, rule: EscalationRule) -> EscalationRule: ...

    @abstractmethod
    def update_escalation_rule(self, rule_id: str, patch: Dict[str, Any]) -> EscalationRule: ...

    @abstractmethod
    def append_escalation_history(self, record: EscalationRecord) -> EscalationRecord: ...

    @abstractmethod
    def record_escalation(self, work_order_id: str, expected_level: int, patch: Dict[str, Any],
                          record: EscalationRecord) -> Optional[WorkOrder]:
        """
        Apply ``patch`` and append ``record`` as one unit, only while the work
        order is still at ``expected_level``. Returns None, writing nothing,
        when the level has moved on or the work order is gone.
        """

    @abstractmethod
    def get_escalation_history(self, work_order_id: str) -> List[EscalationRecord]: ...

    @abstractmethod
    def get_escalation_history_for_warehouse(self, warehouse_id: str) -> List[EscalationRecord]: ...

    def close(self):
        """Release backend resources. Nothing to do for stores without connections."""


def new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStore(MaintenanceStore):
    """Dictionary-backed store guarded by a single re-entrant lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self.warehouses: Dict[str, Warehouse] = {}
        self.equipment: Dict[str, Equipment] = {}
        self.profiles: Dict[str, Profile] = {}
        self.templates: Dict[str, PMTemplate] = {}
        self.schedule_states: Dict[tuple, ScheduleState] = {}
        self.blackouts: List[BlackoutWindow] = []
        self.work_orders: Dict[str, WorkOrder] = {}
        self.rules: Dict[str, EscalationRule] = {}
        self.history: List[EscalationRecord] = []

    # -- seeding helpers --------------------------------------------------
    def add_warehouse(self, warehouse: Warehouse) -> Warehouse:
        with self._lock:
            self.warehouses[warehouse.id] = warehouse
        return warehouse

    def add_equipment(self, equipment: Equipment) -> Equipment:
        with self._lock:
            self.equipment[equipment.id] = equipment
        return equipment

    def add_profile(self, profile: Profile) -> Profile:
        with self._lock:
            self.profiles[profile.id] = profile
        return profile

    def add_template(self, template: PMTemplate) -> PMTemplate:
        with self._lock:
            self.templates[template.id] = template
        return template

    def add_blackout(self, window: BlackoutWindow) -> BlackoutWindow:
        with self._lock:
            if window.id is None:
                window.id = new_id()
            self.blackouts.append(window)
        return window

    # -- contract ---------------------------------------------------------
    def get_active_warehouses(self):
        with self._lock:
            return [w for w in self.warehouses.values() if w.active]

    def get_warehouse(self, warehouse_id):
        with self._lock:
            return self.warehouses.get(warehouse_id)

    def get_equipment(self, warehouse_id):
        with self._lock:
            return [e for e in self.equipment.values() if e.warehouse_id == warehouse_id]

    def get_equipment_by_id(self, equipment_id):
        with self._lock:
            return self.equipment.get(equipment_id)

    def get_profile(self, profile_id):
        with self._lock:
            return self.profiles.get(profile_id)

    def get_active_templates(self, warehouse_id):
        with self._lock:
            return [t for t in self.templates.values() if t.active and t.warehouse_id == warehouse_id]

    def get_template(self, template_id):
        with self._lock:
            return self.templates.get(template_id)

    def get_schedule_state(self, equipment_id, template_id):
        with self._lock:
            state = self.schedule_states.get((equipment_id, template_id))
            return replace(state) if state else None

    def save_schedule_state(self, state):
        with self._lock:
            self.schedule_states[state.key] = replace(state)
        return state

    def get_blackout_windows(self, warehouse_id):
        with self._lock:
            return [b for b in self.blackouts if b.warehouse_id == warehouse_id]

    def _pm_orders(self, equipment_id, template_id):
        return [
            wo for wo in self.work_orders.values()
            if wo.type == WorkOrderType.PREVENTIVE
            and wo.equipment_id == equipment_id
            and wo.template_id == template_id
        ]

    def get_open_work_order(self, equipment_id, template_id):
        with self._lock:
            for wo in self._pm_orders(equipment_id, template_id):
                if wo.status in OPEN_STATUSES:
                    return wo
        return None

    def get_last_completed_work_order(self, equipment_id, template_id):
        with self._lock:
            completed = [wo for wo in self._pm_orders(equipment_id, template_id) if wo.completed_at]
        if not completed:
            return None
        return max(completed, key=lambda wo: wo.completed_at)

    def get_preventive_work_orders(self, equipment_id, template_id, scheduled_from, scheduled_to):
        with self._lock:
            orders = [
                wo for wo in self._pm_orders(equipment_id, template_id)
                if wo.scheduled_for is not None and scheduled_from <= wo.scheduled_for <= scheduled_to
            ]
        return sorted(orders, key=lambda wo: wo.scheduled_for)

    def create_work_order(self, work_order):
        with self._lock:
            if (work_order.type == WorkOrderType.PREVENTIVE and work_order.status in OPEN_STATUSES
                    and self.get_open_work_order(work_order.equipment_id, work_order.template_id)):
                raise DuplicateOpenWorkOrder(
                    "An open preventive work order already exists",
                    equipment_id=work_order.equipment_id, template_id=work_order.template_id,
                )
            stored = replace(work_order, id=work_order.id or new_id())
            self.work_orders[stored.id] = stored
            return stored

    def get_work_order(self, work_order_id):
        with self._lock:
            return self.work_orders.get(work_order_id)

    def update_work_order(self, work_order_id, patch):
        with self._lock:
            current = self.work_orders.get(work_order_id)
            if current is None:
                raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
            updated = current.apply(patch)
            if updated.type == WorkOrderType.PREVENTIVE and updated.is_open and not current.is_open:
                existing = self.get_open_work_order(updated.equipment_id, updated.template_id)
                if existing is not None and existing.id != work_order_id:
                    raise DuplicateOpenWorkOrder(
                        "An open preventive work order already exists",
                        equipment_id=updated.equipment_id, template_id=updated.template_id,
                    )
            self.work_orders[work_order_id] = updated
            return updated

    def get_open_work_orders(self, warehouse_id, statuses):
        wanted = {WorkOrderStatus(s) for s in statuses}
        with self._lock:
            orders = [
                wo for wo in self.work_orders.values()
                if wo.warehouse_id == warehouse_id and wo.status in wanted
            ]
        return sorted(orders, key=lambda wo: wo.created_at)

    def get_escalation_rules(self, warehouse_id, include_inactive=False):
        with self._lock:
            return [
                r for r in self.rules.values()
                if r.warehouse_id == warehouse_id and (include_inactive or r.active)
            ]

    def get_escalation_rule(self, rule_id):
        with self._lock:
            return self.rules.get(rule_id)

    def create_escalation_rule(self, rule):
        with self._lock:
            stored = replace(rule, id=rule.id or new_id())
            self.rules[stored.id] = stored
            return stored

    def update_escalation_rule(self, rule_id, patch):
        with self._lock:
            current = self.rules.get(rule_id)
            if current is None:
                raise NotFoundError(f"Escalation rule {rule_id} not found", rule_id=rule_id)
            updated = replace(current, **patch)
            self.rules[rule_id] = updated
            return updated

    def append_escalation_history(self, record):
        with self._lock:
            self.history.append(record)
        return record

    def record_escalation(self, work_order_id, expected_level, patch, record):
        with self._lock:
            current = self.work_orders.get(work_order_id)
            if current is None or current.escalation_level != expected_level:
                return None
            updated = current.apply(patch)
            self.append_escalation_history(record)
            self.work_orders[work_order_id] = updated
            return updated

    def get_escalation_history(self, work_order_id):
        with self._lock:
            records = [r for r in self.history if r.work_order_id == work_order_id]
        return sorted(records, key=lambda r: r.timestamp)

    def get_escalation_history_for_warehouse(self, warehouse_id):
        with self._lock:
            ids = {wo.id for wo in self.work_orders.values() if wo.warehouse_id == warehouse_id}
            return [r for r in self.history if r.work_order_id in ids]
