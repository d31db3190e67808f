# services/models.py
"""
Domain model for preventive maintenance scheduling and work-order escalation.

Timestamps are timezone-aware UTC datetimes throughout. Stores convert at
their boundary.
"""

import calendar
import re
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from services.errors import ConfigurationError, InvariantViolation
from services.validation_service import require_float, require_int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WorkOrderType(str, Enum):
    CORRECTIVE = "corrective"
    PREVENTIVE = "preventive"
    EMERGENCY = "emergency"


class WorkOrderStatus(str, Enum):
    NEW = "new"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    VERIFIED = "verified"
    CLOSED = "closed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class EquipmentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class EscalationActionType(str, Enum):
    NOTIFY = "notify"
    REASSIGN = "reassign"
    ESCALATE = "escalate"


AUTOMATIC = "automatic"

# A preventive work order in any of these states blocks generation for its pair
OPEN_STATUSES = frozenset({
    WorkOrderStatus.NEW,
    WorkOrderStatus.ASSIGNED,
    WorkOrderStatus.IN_PROGRESS,
    WorkOrderStatus.ON_HOLD,
})

# Only these are aged by the escalation engine
ESCALATABLE_STATUSES = frozenset({
    WorkOrderStatus.NEW,
    WorkOrderStatus.ASSIGNED,
    WorkOrderStatus.IN_PROGRESS,
})

SKIPPED_EQUIPMENT_STATUSES = frozenset({EquipmentStatus.INACTIVE, EquipmentStatus.RETIRED})

ALLOWED_TRANSITIONS = {
    WorkOrderStatus.NEW: {WorkOrderStatus.ASSIGNED, WorkOrderStatus.ON_HOLD},
    WorkOrderStatus.ASSIGNED: {WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.ON_HOLD},
    WorkOrderStatus.IN_PROGRESS: {WorkOrderStatus.COMPLETED, WorkOrderStatus.ON_HOLD},
    WorkOrderStatus.COMPLETED: {WorkOrderStatus.VERIFIED},
    WorkOrderStatus.VERIFIED: {WorkOrderStatus.CLOSED},
    WorkOrderStatus.CLOSED: set(),
    # on_hold may only return to the state it was entered from
    WorkOrderStatus.ON_HOLD: set(),
}


def _coerce_enum(enum_cls, value, label):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Invalid {label} '{value}' (expected one of: {allowed})")


# =============================================================================
# FREQUENCIES
# =============================================================================

def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([hdw])\s*$", re.IGNORECASE)


class Frequency:
    """Recurrence of a PM template: a calendar period, a fixed duration or a cron rule."""

    NAMED_DAYS = {"daily": 1, "weekly": 7, "biweekly": 14}
    NAMED_MONTHS = {"monthly": 1, "quarterly": 3, "semiannually": 6, "annually": 12}
    _UNITS = {"h": "hours", "d": "days", "w": "weeks"}

    def __init__(self, raw: str, months: int = 0, delta: Optional[timedelta] = None,
                 cron: Optional[str] = None):
        self.raw = raw
        self.months = months
        self.delta = delta
        self.cron = cron

    @classmethod
    def parse(cls, raw) -> "Frequency":
        if isinstance(raw, Frequency):
            return raw
        if isinstance(raw, timedelta):
            if raw <= timedelta(0):
                raise ConfigurationError("Frequency must be positive")
            return cls(f"{int(raw.total_seconds() // 3600)}h", delta=raw)
        if raw is None or str(raw).strip() == "":
            raise ConfigurationError("Frequency is required")

        text = str(raw).strip()
        lowered = text.lower()
        if lowered in cls.NAMED_DAYS:
            return cls(lowered, delta=timedelta(days=cls.NAMED_DAYS[lowered]))
        if lowered in cls.NAMED_MONTHS:
            return cls(lowered, months=cls.NAMED_MONTHS[lowered])
        if lowered.startswith("cron:"):
            expression = text[5:].strip()
            try:
                CronTrigger.from_crontab(expression, timezone=timezone.utc)
            except ValueError as e:
                raise ConfigurationError(f"Invalid cron frequency '{expression}': {e}")
            return cls(text, cron=expression)
        if lowered.isdigit():
            days = int(lowered)
            if days <= 0:
                raise ConfigurationError("Frequency must be positive")
            return cls(f"{days}d", delta=timedelta(days=days))

        match = _DURATION_RE.match(lowered)
        if not match:
            raise ConfigurationError(f"Unrecognised frequency '{text}'")
        amount, unit = int(match.group(1)), match.group(2).lower()
        if amount <= 0:
            raise ConfigurationError("Frequency must be positive")
        return cls(lowered, delta=timedelta(**{cls._UNITS[unit]: amount}))

    def next_after(self, moment: datetime) -> datetime:
        """First occurrence strictly after ``moment``."""
        if self.delta is not None:
            return moment + self.delta
        if self.months:
            return add_months(moment, self.months)
        trigger = CronTrigger.from_crontab(self.cron, timezone=moment.tzinfo or timezone.utc)
        return trigger.get_next_fire_time(None, moment + timedelta(seconds=1))

    def __eq__(self, other):
        return isinstance(other, Frequency) and self.raw == other.raw

    def __repr__(self):
        return f"Frequency({self.raw!r})"

    def __str__(self):
        return self.raw


# =============================================================================
# ESCALATION STATE
# =============================================================================

class EscalationState:
    """Tagged escalation state: ``NotEscalated`` or ``EscalatedAtLevel(n)``."""

    level = 0
    escalated = False

    def raised(self, max_level: int) -> "EscalatedAtLevel":
        if self.level >= max_level:
            raise InvariantViolation(
                f"Escalation level {self.level} is already at the maximum of {max_level}",
                level=self.level, max_level=max_level,
            )
        return EscalatedAtLevel(self.level + 1)

    @staticmethod
    def from_level(level: Optional[int]) -> "EscalationState":
        if not level or level <= 0:
            return NotEscalated()
        return EscalatedAtLevel(int(level))


@dataclass(frozen=True)
class NotEscalated(EscalationState):
    pass


@dataclass(frozen=True)
class EscalatedAtLevel(EscalationState):
    level: int
    escalated = True

    def __post_init__(self):
        if self.level < 1:
            raise InvariantViolation(f"EscalatedAtLevel requires level >= 1, got {self.level}")


# =============================================================================
# ENTITIES
# =============================================================================

@dataclass
class Warehouse:
    id: str
    name: str
    timezone: str = "UTC"
    operating_hours_start: Optional[str] = None
    operating_hours_end: Optional[str] = None
    active: bool = True


@dataclass
class Equipment:
    id: str
    asset_tag: str
    model: str
    warehouse_id: str
    status: EquipmentStatus = EquipmentStatus.ACTIVE
    area: str = ""
    criticality: Priority = Priority.MEDIUM

    def __post_init__(self):
        self.status = _coerce_enum(EquipmentStatus, self.status, "equipment status")
        self.criticality = _coerce_enum(Priority, self.criticality, "criticality")


@dataclass
class Profile:
    id: str
    first_name: str
    last_name: str
    role: str
    email: Optional[str] = None
    warehouse_id: Optional[str] = None
    active: bool = True

    @property
    def display_name(self):
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ChecklistItem:
    component: str
    action: str
    sort_order: int = 0
    status: str = "pending"


@dataclass
class PMTemplate:
    id: str
    warehouse_id: str
    equipment_model: str
    component: str
    action: str
    frequency: Frequency
    description: str = ""
    estimated_duration: int = 60
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    checklist: List[Tuple[str, str]] = field(default_factory=list)
    active: bool = True
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.frequency = Frequency.parse(self.frequency)
        self.custom_fields = dict(self.custom_fields or {})

    def checklist_items(self) -> List[ChecklistItem]:
        entries = self.checklist or [(self.component, self.action)]
        return [ChecklistItem(component=c, action=a, sort_order=i) for i, (c, a) in enumerate(entries)]

    @property
    def priority(self) -> Priority:
        return _coerce_enum(Priority, self.custom_fields.get("priority", Priority.MEDIUM.value), "priority")

    def matches(self, equipment: Equipment) -> bool:
        return self.active and self.equipment_model == equipment.model


@dataclass
class ScheduleState:
    equipment_id: str
    template_id: str
    next_due_at: datetime
    last_completed_at: Optional[datetime] = None
    missed_count: int = 0
    compliance_percentage: float = 100.0
    last_missed_work_order_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self):
        return (self.equipment_id, self.template_id)


@dataclass
class WorkOrder:
    id: Optional[str]
    type: WorkOrderType
    status: WorkOrderStatus
    priority: Priority
    warehouse_id: str
    created_at: datetime
    equipment_id: Optional[str] = None
    template_id: Optional[str] = None
    number: Optional[str] = None
    description: str = ""
    assigned_to: Optional[str] = None
    checklist: List[ChecklistItem] = field(default_factory=list)
    due_date: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    status_before_hold: Optional[WorkOrderStatus] = None
    escalation: EscalationState = field(default_factory=NotEscalated)
    last_escalation_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = _coerce_enum(WorkOrderType, self.type, "work order type")
        self.status = _coerce_enum(WorkOrderStatus, self.status, "status")
        self.priority = _coerce_enum(Priority, self.priority, "priority")
        if self.status_before_hold is not None:
            self.status_before_hold = _coerce_enum(WorkOrderStatus, self.status_before_hold, "status")

    @property
    def escalated(self) -> bool:
        return self.escalation.escalated

    @property
    def escalation_level(self) -> int:
        return self.escalation.level

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def aging_anchor(self) -> datetime:
        """Latest of creation, last status change and last escalation action."""
        candidates = [self.created_at, self.status_changed_at, self.last_escalation_at]
        return max(c for c in candidates if c is not None)

    def transition(self, new_status, now: datetime) -> Dict[str, Any]:
        """Validate a status change and return the patch that applies it."""
        target = _coerce_enum(WorkOrderStatus, new_status, "status")
        patch: Dict[str, Any] = {"status": target, "status_changed_at": now}

        if self.status == WorkOrderStatus.ON_HOLD:
            if target != self.status_before_hold:
                raise InvariantViolation(
                    f"Work order on hold can only return to '{self.status_before_hold.value}'",
                    work_order_id=self.id, requested=target.value,
                )
            patch["status_before_hold"] = None
            return patch

        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvariantViolation(
                f"Transition {self.status.value} -> {target.value} is not allowed",
                work_order_id=self.id,
            )
        if target == WorkOrderStatus.ON_HOLD:
            patch["status_before_hold"] = self.status
        if target == WorkOrderStatus.COMPLETED:
            patch["completed_at"] = now
        return patch

    def reopen(self, now: datetime) -> Dict[str, Any]:
        """Start a new lifecycle for a closed work order."""
        if self.status != WorkOrderStatus.CLOSED:
            raise InvariantViolation("Only closed work orders can be reopened", work_order_id=self.id)
        return {
            "status": WorkOrderStatus.NEW,
            "status_changed_at": now,
            "completed_at": None,
            "escalation": NotEscalated(),
            "last_escalation_at": None,
            "status_before_hold": None,
        }

    def apply(self, patch: Dict[str, Any]) -> "WorkOrder":
        return replace(self, **patch)


def rule_threshold(data: Dict[str, Any]) -> Optional[timedelta]:
    """Threshold from ``threshold_minutes`` or ``threshold_hours``; None when neither is given."""
    if "threshold_minutes" in data:
        field_name, unit = "threshold_minutes", "minutes"
    elif "threshold_hours" in data:
        field_name, unit = "threshold_hours", "hours"
    else:
        return None
    amount = require_float(data[field_name], field_name)
    try:
        return timedelta(**{unit: amount})
    except OverflowError:
        raise ConfigurationError(f"{field_name} is out of range", field=field_name)


def _string_list(value, field_name):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{field_name} must be a list", field=field_name)
    return list(value)


@dataclass
class EscalationRule:
    id: Optional[str]
    warehouse_id: str
    threshold: timedelta
    action: EscalationActionType
    match_priority: List[Priority] = field(default_factory=list)
    match_type: List[WorkOrderType] = field(default_factory=list)
    max_level: int = 3
    business_hours: bool = False
    reassign_to: Optional[str] = None
    escalate_to: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.action = _coerce_enum(EscalationActionType, self.action, "escalation action")
        self.match_priority = [_coerce_enum(Priority, p, "priority") for p in (self.match_priority or [])]
        self.match_type = [_coerce_enum(WorkOrderType, t, "work order type") for t in (self.match_type or [])]

    def validate(self, fallback_assignee: Optional[str] = None) -> "EscalationRule":
        if not self.warehouse_id:
            raise ConfigurationError("Escalation rule requires a warehouse", rule_id=self.id)
        if not isinstance(self.threshold, timedelta) or self.threshold <= timedelta(0):
            raise ConfigurationError("Escalation threshold must be a positive duration", rule_id=self.id)
        if int(self.max_level) < 1:
            raise ConfigurationError("max_level must be at least 1", rule_id=self.id)
        if self.action == EscalationActionType.REASSIGN and not (self.reassign_to or fallback_assignee):
            raise ConfigurationError("Reassign rule has no reassign_to and no fallback assignee", rule_id=self.id)
        return self

    def matches(self, work_order: WorkOrder) -> bool:
        if self.match_priority and work_order.priority not in self.match_priority:
            return False
        if self.match_type and work_order.type not in self.match_type:
            return False
        return True

    @property
    def specificity(self) -> int:
        return int(bool(self.match_priority)) + int(bool(self.match_type))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], warehouse_id: str, rule_id: Optional[str] = None) -> "EscalationRule":
        threshold = rule_threshold(data)
        if threshold is None:
            raise ConfigurationError("threshold_hours or threshold_minutes is required")
        return cls(
            id=rule_id,
            warehouse_id=warehouse_id,
            threshold=threshold,
            action=data.get("action", EscalationActionType.NOTIFY.value),
            match_priority=_string_list(data.get("match_priority"), "match_priority"),
            match_type=_string_list(data.get("match_type"), "match_type"),
            max_level=require_int(data.get("max_level", 3), "max_level"),
            business_hours=bool(data.get("business_hours", False)),
            reassign_to=data.get("reassign_to"),
            escalate_to=data.get("escalate_to"),
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class EscalationRecord:
    id: str
    work_order_id: str
    from_level: int
    to_level: int
    action: str
    triggered_by: str
    reason: str
    timestamp: datetime
    rule_id: Optional[str] = None
    escalated_to: Optional[str] = None


@dataclass
class BlackoutWindow:
    warehouse_id: str
    starts_at: datetime
    ends_at: datetime
    reason: str = ""
    id: Optional[str] = None

    def contains(self, moment: datetime) -> bool:
        return self.starts_at <= moment < self.ends_at


@dataclass(frozen=True)
class Event:
    type: str
    payload: Dict[str, Any]
    warehouse_id: Optional[str] = None
    occurred_at: Optional[datetime] = None


# =============================================================================
# SERIALIZATION
# =============================================================================

def to_json(value):
    """Convert model objects into JSON-friendly structures."""
    if isinstance(value, EscalationState):
        return {"escalated": value.escalated, "level": value.level}
    if isinstance(value, Frequency):
        return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_json(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {str(k): to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json(v) for v in value]
    return value
