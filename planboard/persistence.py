"""
persistence.py - sqlite storage for users, orders, notifications and the
shared priority list.

The live-update core only goes through read_entity / read_many /
write_entity; the HTTP layer uses the same Repository.
"""

import json
import os
import re
import sqlite3
from contextlib import closing
from datetime import datetime, timezone


SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    full_name TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('admin','planner','sales','production','viewer')),
    pin TEXT,
    is_active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number TEXT NOT NULL UNIQUE,
    project TEXT DEFAULT '',
    customer TEXT DEFAULT '',
    article_type TEXT,
    material TEXT,
    edge_band TEXT,
    color TEXT,
    height REAL,
    position INTEGER,
    total_boards INTEGER,
    remarks TEXT,
    production_date TEXT,
    delivery_date TEXT,
    purchase_order_number TEXT,
    is_locked INTEGER DEFAULT 0,
    planning_confirmed INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER REFERENCES orders(id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users(id),
    actor_id INTEGER REFERENCES users(id),
    topic TEXT NOT NULL,
    message TEXT NOT NULL,
    is_read INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_notifications_recent ON notifications(order_id, topic, created_at);

CREATE TABLE IF NOT EXISTS priority_list (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    order_ids TEXT NOT NULL DEFAULT '[]',
    updated_by INTEGER REFERENCES users(id),
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id INTEGER,
    old_value TEXT,
    new_value TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

TABLES = {
    "users": "users",
    "orders": "orders",
    "notifications": "notifications",
    "audit": "audit_log",
}

_OPERATORS = {"gte": ">=", "lte": "<=", "gt": ">", "lt": "<", "ne": "!="}
_IDENT = re.compile(r"^[a-z_]+$")


def utc_timestamp(dt=None):
    """Format like SQLite's CURRENT_TIMESTAMP so string comparison works."""
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def row_to_dict(row):
    if row is None:
        return None
    return dict(row)


def rows_to_list(rows):
    return [dict(r) for r in rows]


class Repository:
    def __init__(self, db_path):
        self.db_path = db_path
        self._columns = {}

    def connect(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def init_db(self):
        folder = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(folder, exist_ok=True)
        with closing(self.connect()) as conn:
            conn.executescript(SCHEMA)
            conn.execute("INSERT OR IGNORE INTO priority_list (id, order_ids) VALUES (1, '[]')")
            conn.commit()

    def seed(self):
        """Insert demo users and orders into an empty database."""
        with closing(self.connect()) as conn:
            if conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]:
                return False
            conn.executemany("INSERT INTO users (username, full_name, role, pin) VALUES (?,?,?,?)", [
                ("admin", "Administrator", "admin", "0000"),
                ("planner", "Pat Planner", "planner", "1111"),
                ("planner2", "Sam Scheduler", "planner", "2222"),
                ("sales", "Robin Sales", "sales", "3333"),
                ("floor", "Alex Floor", "production", "4444"),
            ])
            conn.executemany(
                "INSERT INTO orders (order_number, project, customer, material, color, delivery_date) VALUES (?,?,?,?,?,?)", [
                    ("SO-1001", "P1", "Northwind", "Oak", "Natural", "2026-11-02"),
                    ("SO-1002", "P2", "Contoso", "Pine", "White", "2026-11-09"),
                    ("SO-1003", "P3", "Fabrikam", "Birch", "Black", None),
                ])
            conn.commit()
        return True

    # -----------------------------------------------------------------------
    # Generic entity access
    # -----------------------------------------------------------------------

    def _table(self, entity_type):
        try:
            return TABLES[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

    def columns(self, entity_type):
        table = self._table(entity_type)
        if table not in self._columns:
            with closing(self.connect()) as conn:
                self._columns[table] = [r["name"] for r in conn.execute(f"PRAGMA table_info({table})")]
        return self._columns[table]

    def _check_column(self, entity_type, column):
        if not _IDENT.match(column) or column not in self.columns(entity_type):
            raise ValueError(f"Unknown column for {entity_type}: {column}")

    def read_entity(self, entity_type, entity_id, conn=None):
        table = self._table(entity_type)
        sql = f"SELECT * FROM {table} WHERE id=?"
        if conn is not None:
            return row_to_dict(conn.execute(sql, [entity_id]).fetchone())
        with closing(self.connect()) as conn:
            return row_to_dict(conn.execute(sql, [entity_id]).fetchone())

    def read_many(self, entity_type, filters=None, order_by="id", limit=None, conn=None):
        """Select rows matching `filters`.

        Filter keys are column names, optionally suffixed __gte, __lte, __gt,
        __lt or __ne; plain keys test equality (None tests IS NULL).
        """
        table = self._table(entity_type)
        where, vals = [], []
        for key, value in (filters or {}).items():
            column, _, op = key.partition("__")
            self._check_column(entity_type, column)
            if op:
                if op not in _OPERATORS:
                    raise ValueError(f"Unknown filter operator: {op}")
                where.append(f"{column} {_OPERATORS[op]} ?"); vals.append(value)
            elif value is None:
                where.append(f"{column} IS NULL")
            else:
                where.append(f"{column}=?"); vals.append(value)
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if order_by:
            desc = order_by.startswith("-")
            column = order_by.lstrip("-")
            self._check_column(entity_type, column)
            sql += f" ORDER BY {column} {'DESC' if desc else 'ASC'}"
        if limit:
            sql += " LIMIT ?"; vals.append(int(limit))
        if conn is not None:
            return rows_to_list(conn.execute(sql, vals).fetchall())
        with closing(self.connect()) as conn:
            return rows_to_list(conn.execute(sql, vals).fetchall())

    def write_entity(self, entity_type, entity_id, patch, conn=None):
        """Insert (entity_id None) or update a row; returns the stored row."""
        if conn is None:
            with closing(self.connect()) as conn:
                return self.write_entity(entity_type, entity_id, patch, conn)
        table = self._table(entity_type)
        patch = dict(patch)
        for column in patch:
            self._check_column(entity_type, column)
        if "updated_at" in self.columns(entity_type) and "updated_at" not in patch:
            patch["updated_at"] = utc_timestamp()
        if entity_id is None:
            cols = list(patch)
            cur = conn.execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [patch[c] for c in cols])
            entity_id = cur.lastrowid
        else:
            if not patch:
                return self.read_entity(entity_type, entity_id, conn)
            assignments = ", ".join(f"{c}=?" for c in patch)
            cur = conn.execute(f"UPDATE {table} SET {assignments} WHERE id=?", list(patch.values()) + [entity_id])
            if cur.rowcount == 0:
                conn.commit()
                return None
        conn.commit()
        return self.read_entity(entity_type, entity_id, conn)

    def delete_entity(self, entity_type, entity_id, conn=None):
        if conn is None:
            with closing(self.connect()) as conn:
                return self.delete_entity(entity_type, entity_id, conn)
        cur = conn.execute(f"DELETE FROM {self._table(entity_type)} WHERE id=?", [entity_id])
        conn.commit()
        return cur.rowcount > 0

    # -----------------------------------------------------------------------
    # Priority list (single row)
    # -----------------------------------------------------------------------

    def read_priority(self, conn=None):
        if conn is None:
            with closing(self.connect()) as conn:
                return self.read_priority(conn)
        row = conn.execute("SELECT * FROM priority_list WHERE id=1").fetchone()
        if not row:
            return {"order_ids": [], "updated_by": None, "updated_at": None}
        data = row_to_dict(row)
        data["order_ids"] = [str(i) for i in json.loads(data["order_ids"] or "[]")]
        data.pop("id", None)
        return data

    def write_priority(self, order_ids, user_id=None, conn=None):
        if conn is None:
            with closing(self.connect()) as conn:
                return self.write_priority(order_ids, user_id, conn)
        ids = json.dumps([str(i) for i in order_ids])
        conn.execute(
            "INSERT INTO priority_list (id, order_ids, updated_by, updated_at) VALUES (1,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET order_ids=excluded.order_ids, updated_by=excluded.updated_by, updated_at=excluded.updated_at",
            [ids, user_id, utc_timestamp()])
        conn.commit()
        return self.read_priority(conn)

    def log_audit(self, conn, user_id, action, entity_type=None, entity_id=None, old_val=None, new_val=None):
        conn.execute(
            "INSERT INTO audit_log (user_id, action, entity_type, entity_id, old_value, new_value) VALUES (?,?,?,?,?,?)",
            [user_id, action, entity_type, entity_id,
             json.dumps(old_val, default=str) if old_val else None,
             json.dumps(new_val, default=str) if new_val else None]
        )
        conn.commit()
