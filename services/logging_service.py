# services/logging_service.py
import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from elasticsearch import ApiError, TransportError

AUDIT_INDEX = "audit"

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


def configure_audit_fallback(path, max_bytes=10 * 1024 * 1024):
    """Send fallback audit entries to a size-capped file."""
    if path and not any(isinstance(h, RotatingFileHandler) for h in audit_logger.handlers):
        handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=5, encoding="utf-8")
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        audit_logger.addHandler(handler)


def log_audit(es, action, user_id, work_order_id=None, details=None, warehouse_id=None):
    """Index an audit entry. Falls back to the audit log when Elasticsearch is unavailable."""
    audit_entry = {
        "action": action,
        "user_id": user_id,
        "work_order_id": work_order_id,
        "warehouse_id": warehouse_id,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    if es is None:
        audit_logger.info(json.dumps(audit_entry, default=str))
        return False
    try:
        es.index(index=AUDIT_INDEX, document=audit_entry)
        return True
    except (ApiError, TransportError) as e:
        logger.error(f"Failed to log audit action '{action}' for user {user_id}: {e}")
        audit_logger.warning(json.dumps(audit_entry, default=str))
        return False
