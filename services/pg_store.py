# services/pg_store.py
"""PostgreSQL implementation of the maintenance store (psycopg2 + RealDictCursor)."""

import functools
import logging
from dataclasses import fields
from enum import Enum

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json, RealDictCursor

from services.db import close_pool, db_connection, db_transaction
from services.errors import DuplicateOpenWorkOrder, NotFoundError, TransientStoreError
from services.models import (
    BlackoutWindow, ChecklistItem, Equipment, EscalationRecord, EscalationRule,
    EscalationState, OPEN_STATUSES, PMTemplate, Profile, ScheduleState, Warehouse,
    WorkOrder, WorkOrderType, ensure_utc,
)
from services.store import MaintenanceStore, new_id

logger = logging.getLogger(__name__)

OPEN_PM_INDEX = "uniq_open_pm_work_order"
_OPEN_STATUS_VALUES = tuple(s.value for s in OPEN_STATUSES)

WORK_ORDER_COLUMNS = (
    "id, number, type, status, priority, warehouse_id, equipment_id, template_id, assigned_to, "
    "description, checklist, created_at, status_changed_at, status_before_hold, due_date, "
    "scheduled_for, completed_at, escalation_level, last_escalation_at"
)


def translate_errors(func):
    """Map driver errors onto the store error taxonomy."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except pg_errors.UniqueViolation as e:
            if e.diag.constraint_name == OPEN_PM_INDEX:
                raise DuplicateOpenWorkOrder("An open preventive work order already exists")
            raise TransientStoreError(f"{func.__name__} failed: {e}")
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            logger.warning(f"Store call {func.__name__} failed: {e}")
            raise TransientStoreError(f"{func.__name__} failed: {e}")
    return wrapper


def _db_value(value):
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_warehouse(row):
    return Warehouse(
        id=row["id"],
        name=row["name"],
        timezone=row["timezone"] or "UTC",
        operating_hours_start=row["operating_hours_start"],
        operating_hours_end=row["operating_hours_end"],
        active=row["active"],
    )


def _row_to_equipment(row):
    return Equipment(
        id=row["id"],
        asset_tag=row["asset_tag"],
        model=row["model"],
        warehouse_id=row["warehouse_id"],
        status=row["status"],
        area=row["area"] or "",
        criticality=row["criticality"],
    )


def _row_to_template(row):
    return PMTemplate(
        id=row["id"],
        warehouse_id=row["warehouse_id"],
        equipment_model=row["equipment_model"],
        component=row["component"],
        action=row["action"],
        frequency=row["frequency"],
        description=row["description"] or "",
        estimated_duration=row["estimated_duration"] or 60,
        custom_fields=row["custom_fields"] or {},
        checklist=[tuple(item) for item in (row["checklist"] or [])],
        active=row["active"],
        created_at=ensure_utc(row["created_at"]),
    )


def _row_to_state(row):
    return ScheduleState(
        equipment_id=row["equipment_id"],
        template_id=row["template_id"],
        next_due_at=ensure_utc(row["next_due_at"]),
        last_completed_at=ensure_utc(row["last_completed_at"]),
        missed_count=row["missed_count"],
        compliance_percentage=float(row["compliance_percentage"]),
        last_missed_work_order_id=row["last_missed_work_order_id"],
        updated_at=ensure_utc(row["updated_at"]),
    )


def _row_to_work_order(row):
    return WorkOrder(
        id=row["id"],
        number=row["number"],
        type=row["type"],
        status=row["status"],
        priority=row["priority"],
        warehouse_id=row["warehouse_id"],
        equipment_id=row["equipment_id"],
        template_id=row["template_id"],
        assigned_to=row["assigned_to"],
        description=row["description"] or "",
        checklist=[ChecklistItem(**item) for item in (row["checklist"] or [])],
        created_at=ensure_utc(row["created_at"]),
        status_changed_at=ensure_utc(row["status_changed_at"]),
        status_before_hold=row["status_before_hold"],
        due_date=ensure_utc(row["due_date"]),
        scheduled_for=ensure_utc(row["scheduled_for"]),
        completed_at=ensure_utc(row["completed_at"]),
        escalation=EscalationState.from_level(row["escalation_level"]),
        last_escalation_at=ensure_utc(row["last_escalation_at"]),
    )


def _row_to_rule(row):
    return EscalationRule(
        id=row["id"],
        warehouse_id=row["warehouse_id"],
        threshold=row["threshold"],
        action=row["action"],
        match_priority=row["match_priority"] or [],
        match_type=row["match_type"] or [],
        max_level=row["max_level"],
        business_hours=row["business_hours"],
        reassign_to=row["reassign_to"],
        escalate_to=row["escalate_to"],
        active=row["active"],
        created_at=ensure_utc(row["created_at"]),
    )


def _row_to_record(row):
    return EscalationRecord(
        id=row["id"],
        work_order_id=row["work_order_id"],
        rule_id=row["rule_id"],
        from_level=row["from_level"],
        to_level=row["to_level"],
        action=row["action"],
        triggered_by=row["triggered_by"],
        reason=row["reason"] or "",
        escalated_to=row["escalated_to"],
        timestamp=ensure_utc(row["timestamp"]),
    )


def _work_order_columns(values):
    """Translate work-order attribute values into column values."""
    columns = {}
    for key, value in values.items():
        if key == "escalation":
            columns["escalation_level"] = value.level
        elif key == "checklist":
            columns["checklist"] = Json([
                {"component": i.component, "action": i.action, "sort_order": i.sort_order, "status": i.status}
                for i in value
            ])
        else:
            columns[key] = _db_value(value)
    return columns


def _insert_history(c, record):
    c.execute("""
        INSERT INTO escalation_history (id, work_order_id, rule_id, from_level, to_level, action,
            triggered_by, reason, escalated_to, timestamp)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    """, (record.id, record.work_order_id, record.rule_id, record.from_level, record.to_level,
          record.action, record.triggered_by, record.reason, record.escalated_to, record.timestamp))


class PostgresStore(MaintenanceStore):
    """Store backed by the tables created in ``services.init_db``."""

    def _fetchall(self, query, params=()):
        with db_connection() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(query, params)
            return c.fetchall()

    def _fetchone(self, query, params=()):
        with db_connection() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(query, params)
            return c.fetchone()

    @translate_errors
    def get_active_warehouses(self):
        rows = self._fetchall("SELECT * FROM warehouses WHERE active = TRUE ORDER BY name")
        return [_row_to_warehouse(r) for r in rows]

    @translate_errors
    def get_warehouse(self, warehouse_id):
        row = self._fetchone("SELECT * FROM warehouses WHERE id = %s", (warehouse_id,))
        return _row_to_warehouse(row) if row else None

    @translate_errors
    def get_equipment(self, warehouse_id):
        rows = self._fetchall("SELECT * FROM equipment WHERE warehouse_id = %s ORDER BY asset_tag", (warehouse_id,))
        return [_row_to_equipment(r) for r in rows]

    @translate_errors
    def get_equipment_by_id(self, equipment_id):
        row = self._fetchone("SELECT * FROM equipment WHERE id = %s", (equipment_id,))
        return _row_to_equipment(row) if row else None

    @translate_errors
    def get_profile(self, profile_id):
        row = self._fetchone(
            "SELECT id, first_name, last_name, role, email, warehouse_id, active FROM profiles WHERE id = %s",
            (profile_id,),
        )
        return Profile(**row) if row else None

    @translate_errors
    def get_active_templates(self, warehouse_id):
        rows = self._fetchall(
            "SELECT * FROM pm_templates WHERE warehouse_id = %s AND active = TRUE ORDER BY created_at, id",
            (warehouse_id,),
        )
        return [_row_to_template(r) for r in rows]

    @translate_errors
    def get_template(self, template_id):
        row = self._fetchone("SELECT * FROM pm_templates WHERE id = %s", (template_id,))
        return _row_to_template(row) if row else None

    @translate_errors
    def get_schedule_state(self, equipment_id, template_id):
        row = self._fetchone(
            "SELECT * FROM pm_schedule_states WHERE equipment_id = %s AND template_id = %s",
            (equipment_id, template_id),
        )
        return _row_to_state(row) if row else None

    @translate_errors
    def save_schedule_state(self, state):
        with db_transaction() as conn:
            c = conn.cursor()
            c.execute("""
                INSERT INTO pm_schedule_states (equipment_id, template_id, last_completed_at, next_due_at,
                    missed_count, compliance_percentage, last_missed_work_order_id, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (equipment_id, template_id) DO UPDATE SET
                    last_completed_at = EXCLUDED.last_completed_at,
                    next_due_at = EXCLUDED.next_due_at,
                    missed_count = EXCLUDED.missed_count,
                    compliance_percentage = EXCLUDED.compliance_percentage,
                    last_missed_work_order_id = EXCLUDED.last_missed_work_order_id,
                    updated_at = EXCLUDED.updated_at
            """, (state.equipment_id, state.template_id, state.last_completed_at, state.next_due_at,
                  state.missed_count, state.compliance_percentage, state.last_missed_work_order_id,
                  state.updated_at))
        return state

    @translate_errors
    def get_blackout_windows(self, warehouse_id):
        rows = self._fetchall("SELECT * FROM blackout_windows WHERE warehouse_id = %s", (warehouse_id,))
        return [
            BlackoutWindow(
                id=r["id"], warehouse_id=r["warehouse_id"], reason=r["reason"] or "",
                starts_at=ensure_utc(r["starts_at"]), ends_at=ensure_utc(r["ends_at"]),
            )
            for r in rows
        ]

    @translate_errors
    def get_open_work_order(self, equipment_id, template_id):
        row = self._fetchone(
            f"SELECT {WORK_ORDER_COLUMNS} FROM work_orders "
            "WHERE equipment_id = %s AND template_id = %s AND type = %s AND status IN %s LIMIT 1",
            (equipment_id, template_id, WorkOrderType.PREVENTIVE.value, _OPEN_STATUS_VALUES),
        )
        return _row_to_work_order(row) if row else None

    @translate_errors
    def get_last_completed_work_order(self, equipment_id, template_id):
        row = self._fetchone(
            f"SELECT {WORK_ORDER_COLUMNS} FROM work_orders "
            "WHERE equipment_id = %s AND template_id = %s AND type = %s AND completed_at IS NOT NULL "
            "ORDER BY completed_at DESC LIMIT 1",
            (equipment_id, template_id, WorkOrderType.PREVENTIVE.value),
        )
        return _row_to_work_order(row) if row else None

    @translate_errors
    def get_preventive_work_orders(self, equipment_id, template_id, scheduled_from, scheduled_to):
        rows = self._fetchall(
            f"SELECT {WORK_ORDER_COLUMNS} FROM work_orders "
            "WHERE equipment_id = %s AND template_id = %s AND type = %s "
            "AND scheduled_for BETWEEN %s AND %s ORDER BY scheduled_for",
            (equipment_id, template_id, WorkOrderType.PREVENTIVE.value, scheduled_from, scheduled_to),
        )
        return [_row_to_work_order(r) for r in rows]

    @translate_errors
    def create_work_order(self, work_order):
        values = {f.name: getattr(work_order, f.name) for f in fields(work_order)}
        values["id"] = work_order.id or new_id()
        columns = _work_order_columns(values)
        names = ", ".join(columns)
        placeholders = ", ".join(["%s"] * len(columns))
        with db_transaction() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(
                f"INSERT INTO work_orders ({names}) VALUES ({placeholders}) RETURNING {WORK_ORDER_COLUMNS}",
                tuple(columns.values()),
            )
            return _row_to_work_order(c.fetchone())

    @translate_errors
    def get_work_order(self, work_order_id):
        row = self._fetchone(f"SELECT {WORK_ORDER_COLUMNS} FROM work_orders WHERE id = %s", (work_order_id,))
        return _row_to_work_order(row) if row else None

    @translate_errors
    def update_work_order(self, work_order_id, patch):
        columns = _work_order_columns(patch)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        with db_transaction() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(
                f"UPDATE work_orders SET {assignments} WHERE id = %s RETURNING {WORK_ORDER_COLUMNS}",
                tuple(columns.values()) + (work_order_id,),
            )
            row = c.fetchone()
        if row is None:
            raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        return _row_to_work_order(row)

    @translate_errors
    def get_open_work_orders(self, warehouse_id, statuses):
        rows = self._fetchall(
            f"SELECT {WORK_ORDER_COLUMNS} FROM work_orders WHERE warehouse_id = %s AND status IN %s "
            "ORDER BY created_at",
            (warehouse_id, tuple(_db_value(s) for s in statuses)),
        )
        return [_row_to_work_order(r) for r in rows]

    @translate_errors
    def get_escalation_rules(self, warehouse_id, include_inactive=False):
        query = "SELECT * FROM escalation_rules WHERE warehouse_id = %s"
        if not include_inactive:
            query += " AND active = TRUE"
        rows = self._fetchall(query + " ORDER BY created_at, id", (warehouse_id,))
        return [_row_to_rule(r) for r in rows]

    @translate_errors
    def get_escalation_rule(self, rule_id):
        row = self._fetchone("SELECT * FROM escalation_rules WHERE id = %s", (rule_id,))
        return _row_to_rule(row) if row else None

    @translate_errors
    def create_escalation_rule(self, rule):
        with db_transaction() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute("""
                INSERT INTO escalation_rules (id, warehouse_id, match_priority, match_type, threshold, action,
                    max_level, business_hours, reassign_to, escalate_to, active, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
                RETURNING *
            """, (rule.id or new_id(), rule.warehouse_id, [p.value for p in rule.match_priority],
                  [t.value for t in rule.match_type], rule.threshold, rule.action.value, rule.max_level,
                  rule.business_hours, rule.reassign_to, rule.escalate_to, rule.active, rule.created_at))
            return _row_to_rule(c.fetchone())

    @translate_errors
    def update_escalation_rule(self, rule_id, patch):
        columns = {}
        for key, value in patch.items():
            if key in ("match_priority", "match_type"):
                columns[key] = [_db_value(v) for v in value]
            else:
                columns[key] = _db_value(value)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        with db_transaction() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(f"UPDATE escalation_rules SET {assignments} WHERE id = %s RETURNING *",
                      tuple(columns.values()) + (rule_id,))
            row = c.fetchone()
        if row is None:
            raise NotFoundError(f"Escalation rule {rule_id} not found", rule_id=rule_id)
        return _row_to_rule(row)

    @translate_errors
    def append_escalation_history(self, record):
        with db_transaction() as conn:
            _insert_history(conn.cursor(), record)
        return record

    @translate_errors
    def record_escalation(self, work_order_id, expected_level, patch, record):
        columns = _work_order_columns(patch)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        with db_transaction() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute(
                f"UPDATE work_orders SET {assignments} WHERE id = %s AND escalation_level = %s "
                f"RETURNING {WORK_ORDER_COLUMNS}",
                tuple(columns.values()) + (work_order_id, expected_level),
            )
            row = c.fetchone()
            if row is None:
                return None
            _insert_history(c, record)
        return _row_to_work_order(row)

    @translate_errors
    def get_escalation_history(self, work_order_id):
        rows = self._fetchall(
            "SELECT * FROM escalation_history WHERE work_order_id = %s ORDER BY timestamp",
            (work_order_id,),
        )
        return [_row_to_record(r) for r in rows]

    @translate_errors
    def get_escalation_history_for_warehouse(self, warehouse_id):
        rows = self._fetchall("""
            SELECT h.* FROM escalation_history h
            JOIN work_orders w ON w.id = h.work_order_id
            WHERE w.warehouse_id = %s
            ORDER BY h.timestamp
        """, (warehouse_id,))
        return [_row_to_record(r) for r in rows]

    def close(self):
        close_pool()
