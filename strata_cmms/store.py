# strata_cmms/store.py
"""sqlite-backed entity store.

Each named collection (WorkOrder, MaintenanceSchedule, Asset, Contractor)
supports create/get/update/delete/filter/list over plain dict records.
A connection is opened per call and closed before returning.
"""
import sqlite3

from .app_logger import get_logger

logger = get_logger("store")


class StoreError(Exception):
    pass


class RecordNotFound(StoreError):
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS work_orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    building_id INTEGER, title TEXT NOT NULL, description TEXT,
    due_date TEXT, assigned_contractor_id INTEGER, assigned_to TEXT,
    status TEXT DEFAULT 'open', priority TEXT DEFAULT 'medium',
    is_recurring INTEGER DEFAULT 0, recurrence_pattern TEXT, recurrence_end_date TEXT,
    created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS maintenance_schedules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_order_id INTEGER, building_id INTEGER, subject TEXT NOT NULL, description TEXT,
    event_start TEXT NOT NULL, event_end TEXT, recurrence TEXT DEFAULT 'one_time',
    contractor_id INTEGER, assigned_to TEXT, never_expire INTEGER DEFAULT 0,
    status TEXT DEFAULT 'active',
    created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    building_id INTEGER, name TEXT NOT NULL, category TEXT DEFAULT 'other',
    location TEXT, status TEXT DEFAULT 'operational', next_service_date TEXT,
    created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS contractors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_name TEXT NOT NULL, contact_name TEXT, email TEXT, phone TEXT,
    status TEXT DEFAULT 'active',
    license_expiry_date TEXT, insurance_expiry TEXT,
    work_cover_expiry_date TEXT, public_liability_expiry_date TEXT,
    created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS app_config (key TEXT PRIMARY KEY, value TEXT);

CREATE INDEX IF NOT EXISTS idx_work_orders_building ON work_orders(building_id);
CREATE INDEX IF NOT EXISTS idx_work_orders_due_date ON work_orders(due_date);
CREATE INDEX IF NOT EXISTS idx_schedules_work_order ON maintenance_schedules(work_order_id);
CREATE INDEX IF NOT EXISTS idx_schedules_building ON maintenance_schedules(building_id, status);
CREATE INDEX IF NOT EXISTS idx_assets_building ON assets(building_id);
"""

# collection name -> (table, writable columns)
COLLECTIONS = {
    "WorkOrder": ("work_orders", (
        "building_id", "title", "description", "due_date", "assigned_contractor_id",
        "assigned_to", "status", "priority", "is_recurring", "recurrence_pattern",
        "recurrence_end_date")),
    "MaintenanceSchedule": ("maintenance_schedules", (
        "work_order_id", "building_id", "subject", "description", "event_start",
        "event_end", "recurrence", "contractor_id", "assigned_to", "never_expire", "status")),
    "Asset": ("assets", (
        "building_id", "name", "category", "location", "status", "next_service_date")),
    "Contractor": ("contractors", (
        "company_name", "contact_name", "email", "phone", "status",
        "license_expiry_date", "insurance_expiry", "work_cover_expiry_date",
        "public_liability_expiry_date")),
}


class Collection:
    def __init__(self, store, name):
        if name not in COLLECTIONS:
            raise StoreError(f"Unknown collection: {name}")
        self.store = store
        self.name = name
        self.table, self.columns = COLLECTIONS[name]

    def _check_fields(self, fields):
        unknown = [k for k in fields if k not in self.columns]
        if unknown:
            raise StoreError(f"Unknown field(s) for {self.name}: {', '.join(sorted(unknown))}")

    def _fetch(self, conn, record_id):
        row = conn.execute(f"SELECT * FROM {self.table} WHERE id=?", (record_id,)).fetchone()
        return dict(row) if row else None

    def create(self, fields):
        self._check_fields(fields)
        cols = list(fields)
        with self.store.connect() as conn:
            c = conn.cursor()
            if cols:
                c.execute(f"INSERT INTO {self.table} ({','.join(cols)}) VALUES ({','.join('?' * len(cols))})",
                          [fields[k] for k in cols])
            else:
                c.execute(f"INSERT INTO {self.table} DEFAULT VALUES")
            return self._fetch(conn, c.lastrowid)

    def get(self, record_id):
        with self.store.connect() as conn:
            return self._fetch(conn, record_id)

    def update(self, record_id, fields):
        self._check_fields(fields)
        with self.store.connect() as conn:
            assignments = "".join(f"{k}=?," for k in fields)
            c = conn.execute(f"UPDATE {self.table} SET {assignments}updated_at=datetime('now') WHERE id=?",
                             [fields[k] for k in fields] + [record_id])
            if c.rowcount == 0:
                raise RecordNotFound(f"{self.name} {record_id} not found")
            return self._fetch(conn, record_id)

    def delete(self, record_id):
        with self.store.connect() as conn:
            c = conn.execute(f"DELETE FROM {self.table} WHERE id=?", (record_id,))
            if c.rowcount == 0:
                raise RecordNotFound(f"{self.name} {record_id} not found")

    def filter(self, **equals):
        self._check_fields(equals)
        query = f"SELECT * FROM {self.table} WHERE 1=1"
        params = []
        for key, value in equals.items():
            if value is None:
                query += f" AND {key} IS NULL"
            else:
                query += f" AND {key}=?"
                params.append(value)
        with self.store.connect() as conn:
            return [dict(r) for r in conn.execute(query + " ORDER BY id", params).fetchall()]

    def list(self):
        return self.filter()


class EntityStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def connect(self):
        return _Connection(self.db_path)

    def init_schema(self):
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info("Schema ready at %s", self.db_path)

    def collection(self, name):
        return Collection(self, name)

    def get_config(self, key):
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM app_config WHERE key=?", (key,)).fetchone()
            return row["value"] if row else None

    def set_config(self, key, value):
        with self.connect() as conn:
            conn.execute("INSERT OR REPLACE INTO app_config (key,value) VALUES (?,?)", (key, value))


class _Connection:
    """Open/commit/close around one unit of work, wrapping sqlite errors."""

    def __init__(self, db_path):
        self.db_path = db_path
        self.conn = None

    def __enter__(self):
        try:
            self.conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        return self

    def execute(self, sql, params=()):
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def executescript(self, sql):
        try:
            return self.conn.executescript(sql)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def cursor(self):
        return _Cursor(self.conn.cursor())

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            self.conn.close()
        return False


class _Cursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def lastrowid(self):
        return self._cursor.lastrowid

    def execute(self, sql, params=()):
        try:
            return self._cursor.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
