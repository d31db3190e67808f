# services/init_db.py

import logging
import sys

import psycopg2

from config import DATABASE_URL
from services.db import db_transaction
from services.errors import TransientStoreError

logger = logging.getLogger(__name__)


def create_core_tables(c):
    """Warehouses, people and equipment"""
    c.execute('''
        CREATE TABLE IF NOT EXISTS warehouses (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            timezone TEXT DEFAULT 'UTC',
            operating_hours_start TEXT,
            operating_hours_end TEXT,
            active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    ''')
    c.execute('''
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            email TEXT,
            role TEXT NOT NULL DEFAULT 'technician',
            warehouse_id TEXT REFERENCES warehouses(id),
            active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    ''')
    c.execute('''
        CREATE TABLE IF NOT EXISTS equipment (
            id TEXT PRIMARY KEY,
            asset_tag TEXT NOT NULL UNIQUE,
            model TEXT NOT NULL,
            area TEXT DEFAULT '',
            status TEXT NOT NULL DEFAULT 'active',  -- active, inactive, maintenance, retired
            criticality TEXT NOT NULL DEFAULT 'medium',
            warehouse_id TEXT NOT NULL REFERENCES warehouses(id),
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    ''')
    c.execute("CREATE INDEX IF NOT EXISTS idx_equipment_warehouse ON equipment(warehouse_id)")


def create_pm_tables(c):
    """PM templates, per-pair schedule state and blackout windows"""
    c.execute('''
        CREATE TABLE IF NOT EXISTS pm_templates (
            id TEXT PRIMARY KEY,
            warehouse_id TEXT NOT NULL REFERENCES warehouses(id),
            equipment_model TEXT NOT NULL,
            component TEXT NOT NULL,
            action TEXT NOT NULL,
            description TEXT DEFAULT '',
            frequency TEXT NOT NULL,  -- daily, monthly, 7d, 12h, cron:0 6 * * 1
            estimated_duration INTEGER DEFAULT 60,
            custom_fields JSONB DEFAULT '{}'::jsonb,
            checklist JSONB DEFAULT '[]'::jsonb,
            active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    ''')
    c.execute("CREATE INDEX IF NOT EXISTS idx_pm_templates_model ON pm_templates(warehouse_id, equipment_model)")

    c.execute('''
        CREATE TABLE IF NOT EXISTS pm_schedule_states (
            equipment_id TEXT NOT NULL REFERENCES equipment(id),
            template_id TEXT NOT NULL REFERENCES pm_templates(id),
            last_completed_at TIMESTAMPTZ,
            next_due_at TIMESTAMPTZ NOT NULL,
            missed_count INTEGER NOT NULL DEFAULT 0,
            compliance_percentage NUMERIC(5,2) NOT NULL DEFAULT 100,
            last_missed_work_order_id TEXT,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            PRIMARY KEY (equipment_id, template_id),
            CHECK (compliance_percentage >= 0 AND compliance_percentage <= 100)
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS blackout_windows (
            id TEXT PRIMARY KEY,
            warehouse_id TEXT NOT NULL REFERENCES warehouses(id),
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            reason TEXT DEFAULT '',
            CHECK (ends_at > starts_at)
        )
    ''')


def create_work_order_tables(c):
    c.execute('''
        CREATE TABLE IF NOT EXISTS work_orders (
            id TEXT PRIMARY KEY,
            number TEXT UNIQUE,
            type TEXT NOT NULL,  -- corrective, preventive, emergency
            status TEXT NOT NULL DEFAULT 'new',
            priority TEXT NOT NULL DEFAULT 'medium',
            warehouse_id TEXT NOT NULL REFERENCES warehouses(id),
            equipment_id TEXT REFERENCES equipment(id),
            template_id TEXT REFERENCES pm_templates(id),
            assigned_to TEXT REFERENCES profiles(id),
            description TEXT DEFAULT '',
            checklist JSONB DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            status_changed_at TIMESTAMPTZ,
            status_before_hold TEXT,
            due_date TIMESTAMPTZ,
            scheduled_for TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            escalation_level INTEGER NOT NULL DEFAULT 0,
            last_escalation_at TIMESTAMPTZ,
            CHECK (escalation_level >= 0)
        )
    ''')
    c.execute("CREATE INDEX IF NOT EXISTS idx_work_orders_warehouse_status ON work_orders(warehouse_id, status)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_work_orders_pm_pair ON work_orders(equipment_id, template_id)")

    # At most one open preventive work order per equipment/template pair
    c.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uniq_open_pm_work_order
        ON work_orders(equipment_id, template_id)
        WHERE type = 'preventive' AND status IN ('new','assigned','in_progress','on_hold')
    """)


def create_escalation_tables(c):
    c.execute('''
        CREATE TABLE IF NOT EXISTS escalation_rules (
            id TEXT PRIMARY KEY,
            warehouse_id TEXT NOT NULL REFERENCES warehouses(id),
            match_priority TEXT[] DEFAULT '{}',
            match_type TEXT[] DEFAULT '{}',
            threshold INTERVAL NOT NULL,
            action TEXT NOT NULL,  -- notify, reassign, escalate
            max_level INTEGER NOT NULL DEFAULT 3,
            business_hours BOOLEAN DEFAULT FALSE,
            reassign_to TEXT REFERENCES profiles(id),
            escalate_to TEXT REFERENCES profiles(id),
            active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CHECK (max_level >= 1)
        )
    ''')
    c.execute("CREATE INDEX IF NOT EXISTS idx_escalation_rules_warehouse ON escalation_rules(warehouse_id)")

    c.execute('''
        CREATE TABLE IF NOT EXISTS escalation_history (
            id TEXT PRIMARY KEY,
            work_order_id TEXT NOT NULL REFERENCES work_orders(id),
            rule_id TEXT REFERENCES escalation_rules(id),
            from_level INTEGER NOT NULL,
            to_level INTEGER NOT NULL,
            action TEXT NOT NULL,
            triggered_by TEXT NOT NULL,  -- 'automatic' or a profile id
            reason TEXT DEFAULT '',
            escalated_to TEXT,
            timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    ''')
    c.execute("CREATE INDEX IF NOT EXISTS idx_escalation_history_wo ON escalation_history(work_order_id)")


def init_db():
    """Initialize the database schema.

    Creates every table the automation core reads and writes.
    Returns True on success, False on failure.
    """
    logger.info("Starting database initialization...")
    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured!")
        return False
    try:
        with db_transaction() as conn:
            c = conn.cursor()
            create_core_tables(c)
            create_pm_tables(c)
            create_work_order_tables(c)
            create_escalation_tables(c)
        logger.info("Database initialization completed successfully")
        return True
    except (psycopg2.Error, TransientStoreError) as e:
        logger.error(f"Database initialization failed: {e}")
        return False


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    success = init_db()
    sys.exit(0 if success else 1)
