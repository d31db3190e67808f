# services/db.py (PostgreSQL pool shared by the store and schema bootstrap)
import logging
import threading
from contextlib import contextmanager

import psycopg2
from psycopg2.pool import PoolError, SimpleConnectionPool

from config import DATABASE_URL, DB_POOL_SIZE
from services.errors import TransientStoreError

logger = logging.getLogger(__name__)

_pool = None
_pool_lock = threading.Lock()


def _get_pool():
    """Lazily create the process-wide pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                try:
                    _pool = SimpleConnectionPool(1, DB_POOL_SIZE, dsn=DATABASE_URL)
                except psycopg2.OperationalError as e:
                    logger.error(f"Database unavailable: {e}")
                    raise TransientStoreError("Database unavailable", cause=e)
                logger.info(f"Connection pool ready (max {DB_POOL_SIZE} connections)")
    return _pool


@contextmanager
def _checked_out(commit):
    pool = _get_pool()
    try:
        conn = pool.getconn()
    except PoolError as e:
        logger.error(f"No database connection available: {e}")
        raise TransientStoreError("Connection pool exhausted", cause=e)

    try:
        yield conn
        if commit:
            conn.commit()
    except Exception as e:
        try:
            conn.rollback()
        except psycopg2.Error:
            logger.warning("Rollback failed on broken connection")
        logger.error(f"{'Transaction' if commit else 'Query'} failed: {e}")
        raise
    finally:
        try:
            pool.putconn(conn, close=bool(conn.closed))
        except PoolError as e:
            logger.error(f"Failed to return connection to pool: {e}")


def db_connection():
    """
    Connection for reads; returned to the pool on exit.

    Usage:
        with db_connection() as conn:
            c = conn.cursor(cursor_factory=RealDictCursor)
            c.execute("SELECT * FROM work_orders WHERE id = %s", (wo_id,))
    """
    return _checked_out(commit=False)


def db_transaction():
    """Connection for writes: commits when the block succeeds, rolls back otherwise."""
    return _checked_out(commit=True)


def close_pool():
    """Close every pooled connection (application shutdown)."""
    global _pool
    with _pool_lock:
        if _pool is None:
            return
        try:
            _pool.closeall()
            logger.info("Database connection pool closed")
        except PoolError as e:
            logger.error(f"Error closing pool: {e}")
        _pool = None
