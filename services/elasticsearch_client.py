# services/elasticsearch_client.py
import logging
import threading
import time

from elasticsearch import Elasticsearch

from config import AUDIT_TO_ELASTICSEARCH, ES_HOST, ES_PASS, ES_USER

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 300

_es = None
_last_failure = None
_es_lock = threading.Lock()


def get_es():
    """
    Shared Elasticsearch client, created on first use.

    Returns None when audit indexing is switched off or the cluster is not
    reachable; callers fall back to the audit log file. A failed connection
    is retried after RETRY_AFTER_SECONDS.
    """
    global _es, _last_failure
    if not AUDIT_TO_ELASTICSEARCH:
        return None
    if _es is None:
        with _es_lock:
            if _es is None:
                if _last_failure is not None and time.monotonic() - _last_failure < RETRY_AFTER_SECONDS:
                    return None
                auth = (ES_USER, ES_PASS) if ES_PASS else None
                client = Elasticsearch(ES_HOST, basic_auth=auth)
                if not client.ping():
                    _last_failure = time.monotonic()
                    logger.warning(f"Elasticsearch not reachable at {ES_HOST}; audit events go to the fallback log")
                    return None
                logger.info(f"Elasticsearch connected successfully at {ES_HOST}")
                _es = client
    return _es
