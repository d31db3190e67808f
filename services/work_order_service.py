# services/work_order_service.py
import logging

from services.elasticsearch_client import get_es
from services.errors import NotFoundError
from services.logging_service import log_audit
from services.models import WorkOrderStatus, WorkOrderType, utcnow

logger = logging.getLogger(__name__)


class WorkOrderService:
    """Status transitions for work orders, including the PM completion hook."""

    def __init__(self, store, pm_engine=None, clock=utcnow):
        self.store = store
        self.pm_engine = pm_engine
        self.clock = clock

    def _get(self, work_order_id):
        work_order = self.store.get_work_order(work_order_id)
        if work_order is None:
            raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        return work_order

    def transition(self, work_order_id, new_status, user_id="system", now=None):
        now = now or self.clock()
        work_order = self._get(work_order_id)
        patch = work_order.transition(new_status, now)
        updated = self.store.update_work_order(work_order_id, patch)
        logger.info(f"Work order {work_order_id}: {work_order.status.value} -> {updated.status.value}")
        log_audit(get_es(), "work_order_status", user_id, work_order_id=work_order_id,
                  details={"from": work_order.status.value, "to": updated.status.value},
                  warehouse_id=updated.warehouse_id)

        if (updated.status == WorkOrderStatus.COMPLETED and updated.type == WorkOrderType.PREVENTIVE
                and self.pm_engine is not None):
            self.pm_engine.sync_schedule(updated.equipment_id, updated.template_id, now)
        return updated

    def reopen(self, work_order_id, user_id="system", now=None):
        now = now or self.clock()
        work_order = self._get(work_order_id)
        updated = self.store.update_work_order(work_order_id, work_order.reopen(now))
        logger.info(f"Work order {work_order_id} reopened by {user_id}")
        log_audit(get_es(), "work_order_reopened", user_id, work_order_id=work_order_id,
                  warehouse_id=updated.warehouse_id)
        return updated
