from contextlib import contextmanager
from unittest import mock

import psycopg2
import pytest

from services.errors import TransientStoreError
from services.models import EscalatedAtLevel, EscalationRecord
from services.pg_store import PostgresStore

from conftest import NOW


def escalation_record():
    return EscalationRecord(id="h-1", work_order_id="wo-1", from_level=0, to_level=1, action="escalate",
                            triggered_by="automatic", reason="Open 5.0 hours (threshold 4.0)", timestamp=NOW)


@pytest.fixture
def cursor():
    return mock.Mock()


@pytest.fixture
def transaction(cursor):
    conn = mock.Mock()
    conn.cursor.return_value = cursor

    @contextmanager
    def _transaction():
        yield conn

    with mock.patch("services.pg_store.db_transaction", _transaction):
        yield conn


class TestRecordEscalation:
    def test_level_moved_on_writes_no_history(self, transaction, cursor):
        cursor.fetchone.return_value = None
        patch = {"escalation": EscalatedAtLevel(1), "last_escalation_at": NOW}

        assert PostgresStore().record_escalation("wo-1", 0, patch, escalation_record()) is None

        assert cursor.execute.call_count == 1
        sql, params = cursor.execute.call_args.args
        assert "WHERE id = %s AND escalation_level = %s" in sql
        assert params[-2:] == ("wo-1", 0)
        assert params[0] == 1

    def test_update_and_history_share_one_transaction(self, transaction, cursor):
        cursor.fetchone.return_value = {"id": "wo-1"}
        with mock.patch("services.pg_store._row_to_work_order", side_effect=lambda row: row):
            PostgresStore().record_escalation("wo-1", 0, {"escalation": EscalatedAtLevel(1)}, escalation_record())

        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert len(statements) == 2
        assert "UPDATE work_orders" in statements[0]
        assert "INSERT INTO escalation_history" in statements[1]
        assert transaction.cursor.call_count == 1

    def test_driver_failure_is_transient(self, transaction, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")
        with pytest.raises(TransientStoreError):
            PostgresStore().record_escalation("wo-1", 0, {"escalation": EscalatedAtLevel(1)}, escalation_record())
