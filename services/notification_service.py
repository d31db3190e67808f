# services/notification_service.py
"""
Notification dispatchers for engine events.

Engines call ``emit(event)`` and never wait for delivery. Delivery failures
are logged and audited here and never reach the caller.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

from services.elasticsearch_client import get_es
from services.email_service import send_notification
from services.logging_service import log_audit
from services.models import to_json

logger = logging.getLogger(__name__)

PM_GENERATED = "pm_generated"
PM_COMPLIANCE_ALERT = "pm_compliance_alert"
ESCALATION_TRIGGERED = "escalation_triggered"

EVENT_TEMPLATES = {
    PM_GENERATED: (
        "PM work order {{ number or work_order_id }} created",
        "A preventive maintenance work order was generated.\n\n"
        "Work order: {{ number or work_order_id }}\n"
        "Equipment: {{ asset_tag or equipment_id }}\n"
        "Template: {{ template_id }}\n"
        "Due: {{ due_date }}\n",
    ),
    PM_COMPLIANCE_ALERT: (
        "PM compliance alert for {{ asset_tag or equipment_id }}",
        "PM compliance for equipment {{ asset_tag or equipment_id }} is "
        "{{ '%.1f'|format(compliance_percentage) }}% with {{ missed_count }} missed occurrence(s).\n",
    ),
    ESCALATION_TRIGGERED: (
        "Work order {{ number or work_order_id }} escalated ({{ action }})",
        "Work order {{ number or work_order_id }} triggered escalation action '{{ action }}'.\n\n"
        "Level: {{ from_level }} -> {{ to_level }}\n"
        "{% if escalated_to %}Escalated to: {{ escalated_to }}\n{% endif %}"
        "{% if reason %}Reason: {{ reason }}\n{% endif %}",
    ),
}


class NotificationDispatcher(ABC):
    @abstractmethod
    def emit(self, event):
        """Hand an event off for delivery. Must not raise."""

    def shutdown(self):
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes events to the audit trail only. Used when SMTP is not configured."""

    def emit(self, event):
        logger.info(f"[Notify] {event.type}: {event.payload}")
        log_audit(get_es(), event.type, "system",
                  work_order_id=event.payload.get("work_order_id"),
                  details=to_json(event.payload), warehouse_id=event.warehouse_id)


class EmailNotificationDispatcher(NotificationDispatcher):
    """Renders event templates and sends them by email on a small worker pool."""

    def __init__(self, recipients, max_workers=4, synchronous=False):
        self.recipients = list(recipients)
        self.synchronous = synchronous
        self.executor = None if synchronous else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify")

    def emit(self, event):
        if not self.recipients:
            logger.debug(f"[Notify] No recipients configured, dropping {event.type}")
            return
        if self.synchronous:
            self._deliver(event)
            return
        try:
            self.executor.submit(self._deliver, event)
        except RuntimeError:
            logger.warning(f"[Notify] Dispatcher shut down, dropping {event.type}")

    def _deliver(self, event):
        subject, body = EVENT_TEMPLATES.get(event.type, ("{{ event_type }}", "{{ payload }}"))
        variables = dict(to_json(event.payload))
        variables.setdefault("event_type", event.type)
        variables.setdefault("payload", variables.copy())
        try:
            send_notification(subject, body, self.recipients, template_vars=variables)
        except Exception:
            logger.exception(f"[Notify] Delivery of {event.type} failed")

    def shutdown(self):
        if self.executor is not None:
            self.executor.shutdown(wait=True)
