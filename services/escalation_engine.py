# services/escalation_engine.py
"""
Work-order escalation.

``evaluate`` ages every open work order in a warehouse against the most
specific matching rule and applies the rule's action once the threshold is
reached. ``manually_escalate`` applies the escalate action on demand.
Every action is written to the append-only escalation history.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import config
from services.calendar_service import CalendarProvider
from services.errors import ConfigurationError, InvariantViolation, NotFoundError
from services.models import (
    AUTOMATIC, ESCALATABLE_STATUSES, OPEN_STATUSES, EscalationActionType, EscalationRecord,
    EscalationRule, Event, WorkOrderStatus, ensure_utc, rule_threshold, to_json, utcnow,
)
from services.notification_service import ESCALATION_TRIGGERED
from services.store import new_id
from services.validation_service import require_int

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_RULES = [
    {"match_type": ["emergency"], "match_priority": ["critical"], "threshold_hours": 4, "action": "escalate"},
    {"match_type": ["corrective"], "match_priority": ["high"], "threshold_hours": 12, "action": "notify"},
    {"match_type": ["corrective"], "match_priority": ["medium"], "threshold_hours": 24, "action": "notify"},
    {"match_type": ["preventive"], "match_priority": ["low"], "threshold_hours": 72, "action": "notify"},
]

RULE_FIELDS = {
    "match_priority", "match_type", "threshold_hours", "threshold_minutes", "action", "max_level",
    "business_hours", "reassign_to", "escalate_to", "active",
}


@dataclass
class EscalationAction:
    work_order_id: str
    rule_id: Optional[str]
    action: str
    from_level: int
    to_level: int
    triggered_by: str
    reason: str
    escalated_to: Optional[str] = None


@dataclass
class EvaluationResult:
    warehouse_id: str
    evaluated: int = 0
    actions: List[EscalationAction] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    ran_at: Optional[datetime] = None

    def to_dict(self):
        return to_json({
            "warehouse_id": self.warehouse_id,
            "evaluated": self.evaluated,
            "actions": self.actions,
            "errors": self.errors,
            "ran_at": self.ran_at,
        })


def select_rule(work_order, rules):
    """Most specific matching rule; ties go to the oldest rule, then the lowest id."""
    candidates = [r for r in rules if r.matches(work_order)]
    if not candidates:
        return None
    candidates.sort(key=lambda r: (-r.specificity, r.created_at or _EPOCH, r.id or ""))
    return candidates[0]


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600.0, 2)


class EscalationEngine:
    def __init__(self, store, notifier, calendar: Optional[CalendarProvider] = None,
                 clock: Callable[[], datetime] = utcnow, fallback_assignee: Optional[str] = None,
                 tiers: Optional[List[str]] = None, default_max_level: Optional[int] = None):
        self.store = store
        self.notifier = notifier
        self.calendar = calendar or CalendarProvider(store)
        self.clock = clock
        self.fallback_assignee = fallback_assignee if fallback_assignee is not None else config.ESCALATION_FALLBACK_ASSIGNEE
        self.tiers = list(tiers if tiers is not None else config.ESCALATION_TIERS)
        self.default_max_level = default_max_level or config.DEFAULT_MAX_ESCALATION_LEVEL

    def _now(self, now):
        return ensure_utc(now) if now is not None else self.clock()

    def _emit(self, payload, warehouse_id, now):
        try:
            self.notifier.emit(Event(type=ESCALATION_TRIGGERED, payload=payload,
                                     warehouse_id=warehouse_id, occurred_at=now))
        except Exception:
            logger.exception("Notifier rejected escalation event")

    def _active_rules(self, warehouse_id):
        return [r.validate(self.fallback_assignee) for r in self.store.get_escalation_rules(warehouse_id)]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(self, warehouse_id: str, now: datetime = None) -> EvaluationResult:
        if not warehouse_id:
            raise ConfigurationError("warehouse_id is required")
        now = self._now(now)
        rules = self._active_rules(warehouse_id)
        orders = self.store.get_open_work_orders(warehouse_id, ESCALATABLE_STATUSES)
        result = EvaluationResult(warehouse_id=warehouse_id, evaluated=len(orders), ran_at=now)

        for work_order in orders:
            try:
                action = self._evaluate_order(work_order, rules, now)
                if action is not None:
                    result.actions.append(action)
            except Exception as e:
                logger.exception(f"Escalation failed for work order {work_order.id}")
                result.errors.append({"work_order_id": work_order.id, "error": str(e), "type": type(e).__name__})

        if result.actions:
            logger.info(f"Escalation for warehouse {warehouse_id}: {len(result.actions)} action(s) "
                        f"on {result.evaluated} open work order(s)")
        return result

    def _evaluate_order(self, work_order, rules, now):
        # Re-read: the batch snapshot may predate a manual escalation or a status change
        work_order = self.store.get_work_order(work_order.id)
        if work_order is None or work_order.status not in ESCALATABLE_STATUSES:
            return None
        rule = select_rule(work_order, rules)
        if rule is None or work_order.escalation_level >= rule.max_level:
            return None
        calendar = self.calendar.calendar_for(work_order.warehouse_id, rule.business_hours)
        elapsed = calendar.elapsed(work_order.aging_anchor(), now)
        if elapsed < rule.threshold:
            return None
        clock_kind = "business hours" if rule.business_hours else "hours"
        reason = f"Open {_hours(elapsed)} {clock_kind} (threshold {_hours(rule.threshold)})"
        return self._apply(work_order, rule, rule.action, now, AUTOMATIC, reason, rule.max_level)

    def _apply(self, work_order, rule, action, now, triggered_by, reason, max_level, target=None):
        from_state = work_order.escalation
        patch: Dict[str, Any] = {"last_escalation_at": now}
        escalated_to = None

        if action == EscalationActionType.NOTIFY:
            to_state = from_state
        elif action == EscalationActionType.REASSIGN:
            escalated_to = (rule.reassign_to if rule else None) or self.fallback_assignee
            if not escalated_to:
                raise ConfigurationError("No reassignment target configured", work_order_id=work_order.id)
            to_state = from_state.raised(max_level)
            patch["assigned_to"] = escalated_to
        else:
            to_state = from_state.raised(max_level)
            if target is not None:
                escalated_to = target
                patch["assigned_to"] = target
            elif rule is not None and rule.escalate_to:
                escalated_to = rule.escalate_to
            elif to_state.level <= len(self.tiers):
                escalated_to = self.tiers[to_state.level - 1]
            elif self.tiers:
                escalated_to = self.tiers[-1]

        patch["escalation"] = to_state

        record = EscalationRecord(
            id=new_id(),
            work_order_id=work_order.id,
            rule_id=rule.id if rule else None,
            from_level=from_state.level,
            to_level=to_state.level,
            action=action.value,
            triggered_by=triggered_by,
            reason=reason,
            escalated_to=escalated_to,
            timestamp=now,
        )
        if self.store.record_escalation(work_order.id, from_state.level, patch, record) is None:
            logger.info(f"Work order {work_order.id} left level {from_state.level} before {action.value} was applied")
            return None

        self._emit({
            "work_order_id": work_order.id,
            "number": work_order.number,
            "from_level": record.from_level,
            "to_level": record.to_level,
            "action": record.action,
            "escalated_to": escalated_to,
            "reason": reason,
            "triggered_by": triggered_by,
        }, work_order.warehouse_id, now)

        return EscalationAction(
            work_order_id=work_order.id,
            rule_id=record.rule_id,
            action=record.action,
            from_level=record.from_level,
            to_level=record.to_level,
            triggered_by=triggered_by,
            reason=reason,
            escalated_to=escalated_to,
        )

    # ------------------------------------------------------------------
    # Manual escalation
    # ------------------------------------------------------------------
    def manually_escalate(self, work_order_id: str, escalate_to_user_id: str, reason: str,
                          escalated_by_user_id: str, now: datetime = None) -> EscalationAction:
        now = self._now(now)
        work_order = self.store.get_work_order(work_order_id)
        if work_order is None:
            raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        target = self.store.get_profile(escalate_to_user_id)
        if target is None:
            raise NotFoundError(f"Profile {escalate_to_user_id} not found", profile_id=escalate_to_user_id)
        if work_order.status == WorkOrderStatus.CLOSED:
            raise InvariantViolation("Closed work orders cannot be escalated", work_order_id=work_order_id)

        rule = select_rule(work_order, self._active_rules(work_order.warehouse_id))
        max_level = rule.max_level if rule else self.default_max_level
        if work_order.escalation_level >= max_level:
            raise InvariantViolation(
                f"Work order is already at the maximum escalation level ({max_level})",
                work_order_id=work_order_id, level=work_order.escalation_level,
            )

        logger.info(f"Manual escalation of work order {work_order_id} to {target.id} by {escalated_by_user_id}")
        action = self._apply(work_order, rule, EscalationActionType.ESCALATE, now, escalated_by_user_id,
                             reason or "Manual escalation", max_level, target=target.id)
        if action is None:
            raise InvariantViolation("Work order was escalated concurrently; retry", work_order_id=work_order_id)
        return action

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def _require_warehouse(self, warehouse_id):
        if not warehouse_id:
            raise ConfigurationError("warehouse_id is required")
        if self.store.get_warehouse(warehouse_id) is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found", warehouse_id=warehouse_id)

    def _check_targets(self, rule):
        for profile_id in (rule.reassign_to, rule.escalate_to):
            if profile_id and self.store.get_profile(profile_id) is None:
                raise NotFoundError(f"Profile {profile_id} not found", profile_id=profile_id)

    def list_rules(self, warehouse_id: str, include_inactive: bool = False) -> List[EscalationRule]:
        self._require_warehouse(warehouse_id)
        rules = self.store.get_escalation_rules(warehouse_id, include_inactive=include_inactive)
        return sorted(rules, key=lambda r: (-r.specificity, r.created_at or _EPOCH, r.id or ""))

    def create_rule(self, warehouse_id: str, data: Dict[str, Any], now: datetime = None) -> EscalationRule:
        self._require_warehouse(warehouse_id)
        unknown = set(data) - RULE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")
        rule = EscalationRule.from_dict(data, warehouse_id)
        rule.created_at = self._now(now)
        rule.validate(self.fallback_assignee)
        self._check_targets(rule)
        created = self.store.create_escalation_rule(rule)
        logger.info(f"Created escalation rule {created.id} for warehouse {warehouse_id}")
        return created

    def _rule_in_warehouse(self, warehouse_id, rule_id):
        rule = self.store.get_escalation_rule(rule_id)
        if rule is None or rule.warehouse_id != warehouse_id:
            raise NotFoundError(f"Escalation rule {rule_id} not found", rule_id=rule_id)
        return rule

    def update_rule(self, warehouse_id: str, rule_id: str, data: Dict[str, Any]) -> EscalationRule:
        existing = self._rule_in_warehouse(warehouse_id, rule_id)
        unknown = set(data) - RULE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")

        patch = {k: v for k, v in data.items() if k not in ("threshold_hours", "threshold_minutes")}
        threshold = rule_threshold(data)
        if threshold is not None:
            patch["threshold"] = threshold
        if "max_level" in patch:
            patch["max_level"] = require_int(patch["max_level"], "max_level")
        for key in ("match_priority", "match_type"):
            if patch.get(key) is not None and not isinstance(patch[key], (list, tuple)):
                raise ConfigurationError(f"{key} must be a list", field=key)
        candidate = replace(existing, **patch).validate(self.fallback_assignee)
        self._check_targets(candidate)
        normalized = {key: getattr(candidate, key) for key in patch}
        return self.store.update_escalation_rule(rule_id, normalized)

    def deactivate_rule(self, warehouse_id: str, rule_id: str) -> EscalationRule:
        self._rule_in_warehouse(warehouse_id, rule_id)
        logger.info(f"Deactivating escalation rule {rule_id}")
        return self.store.update_escalation_rule(rule_id, {"active": False})

    def ensure_default_rules(self, warehouse_id: str, now: datetime = None) -> List[EscalationRule]:
        """Seed the default rule set for a warehouse that has no rules at all."""
        self._require_warehouse(warehouse_id)
        if self.store.get_escalation_rules(warehouse_id, include_inactive=True):
            return []
        now = self._now(now)
        created = []
        for data in DEFAULT_RULES:
            rule = EscalationRule.from_dict(data, warehouse_id)
            rule.created_at = now
            created.append(self.store.create_escalation_rule(rule.validate(self.fallback_assignee)))
        logger.info(f"Seeded {len(created)} default escalation rules for warehouse {warehouse_id}")
        return created

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def history(self, work_order_id: str) -> List[EscalationRecord]:
        if self.store.get_work_order(work_order_id) is None:
            raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        return self.store.get_escalation_history(work_order_id)

    def escalation_stats(self, warehouse_id: str, now: datetime = None) -> Dict[str, Any]:
        self._require_warehouse(warehouse_id)
        now = self._now(now)
        escalated = [wo for wo in self.store.get_open_work_orders(warehouse_id, OPEN_STATUSES) if wo.escalated]

        by_level: Dict[str, int] = {}
        by_priority: Dict[str, int] = {}
        for wo in escalated:
            by_level[str(wo.escalation_level)] = by_level.get(str(wo.escalation_level), 0) + 1
            by_priority[wo.priority.value] = by_priority.get(wo.priority.value, 0) + 1

        today = now.date()
        escalated_today = {
            r.work_order_id for r in self.store.get_escalation_history_for_warehouse(warehouse_id)
            if r.to_level > r.from_level and r.timestamp.astimezone(timezone.utc).date() == today
        }
        return {
            "total_escalated": len(escalated),
            "escalated_today": len(escalated_today),
            "by_level": by_level,
            "by_priority": by_priority,
        }
