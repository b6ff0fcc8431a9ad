import json
import os
import sqlite3
import threading
from datetime import datetime

DB_PATH = os.environ.get("PANEL_DB_PATH", "/data/mtpanel.db")
DB_URL = (os.environ.get("PANEL_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()

_pg_pool = None
_pg_pool_lock = threading.Lock()

NOTIFICATION_COLUMNS = ("id", "type", "message", "is_read", "timestamp", "link_to", "context_json", "dedup_key")
ROUTER_COLUMNS = ("id", "name", "host", "username", "password", "port", "api_type", "use_tls")
SALES_COLUMNS = ("id", "date", "router_id", "router_name", "client_name", "plan_name", "plan_price", "currency")

# API payloads use camelCase for sales records, storage uses snake_case.
SALES_FIELD_MAP = {
    "id": "id",
    "date": "date",
    "routerId": "router_id",
    "routerName": "router_name",
    "clientName": "client_name",
    "planName": "plan_name",
    "planPrice": "plan_price",
    "currency": "currency",
}


def _use_postgres():
    url = (DB_URL or "").lower()
    return url.startswith("postgres://") or url.startswith("postgresql://")


def _translate_qmarks(sql):
    # sqlite placeholders are "?", psycopg2 wants "%s"; leave quoted literals alone.
    out = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
            out.append(ch)
        elif ch == "?" and not in_single:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


class _PGResult:
    def __init__(self, cursor):
        self._cursor = cursor

    def fetchone(self):
        if self._cursor is None:
            return None
        try:
            return self._cursor.fetchone()
        finally:
            self._cursor.close()
            self._cursor = None

    def fetchall(self):
        if self._cursor is None:
            return []
        try:
            return self._cursor.fetchall()
        finally:
            self._cursor.close()
            self._cursor = None


class _PGConn:
    """Makes a pooled psycopg2 connection look like a sqlite3 connection."""

    def __init__(self, pool, conn):
        self._pool = pool
        self._conn = conn

    def __enter__(self):
        self._conn.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._conn.__exit__(exc_type, exc, tb)

    def execute(self, sql, params=None):
        from psycopg2.extras import RealDictCursor

        cur = self._conn.cursor(cursor_factory=RealDictCursor)
        try:
            cur.execute(_translate_qmarks(str(sql)), tuple(params or ()))
        except Exception:
            cur.close()
            raise
        if cur.description is None:
            cur.close()
            return _PGResult(None)
        return _PGResult(cur)

    def close(self):
        try:
            self._conn.rollback()
        except Exception:
            pass
        self._pool.putconn(self._conn)


def _get_pg_pool():
    global _pg_pool
    if _pg_pool is not None:
        return _pg_pool
    with _pg_pool_lock:
        if _pg_pool is not None:
            return _pg_pool
        from psycopg2.pool import ThreadedConnectionPool

        minconn = max(int(os.environ.get("PANEL_PG_POOL_MIN", 1) or 1), 1)
        maxconn = max(int(os.environ.get("PANEL_PG_POOL_MAX", 10) or 10), minconn)
        _pg_pool = ThreadedConnectionPool(minconn, maxconn, dsn=DB_URL)
        return _pg_pool


def get_conn():
    if _use_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        conn.autocommit = False
        return _PGConn(pool, conn)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_status (
        job_name TEXT PRIMARY KEY,
        last_run_at TEXT,
        last_success_at TEXT,
        last_error TEXT,
        last_error_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS routers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        host TEXT NOT NULL,
        username TEXT NOT NULL,
        password TEXT,
        port INTEGER NOT NULL,
        api_type TEXT NOT NULL DEFAULT 'legacy',
        use_tls INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        message TEXT NOT NULL,
        is_read INTEGER NOT NULL DEFAULT 0,
        timestamp TEXT NOT NULL,
        link_to TEXT,
        context_json TEXT,
        dedup_key TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales_records (
        id TEXT PRIMARY KEY,
        date TEXT NOT NULL,
        router_id TEXT,
        router_name TEXT,
        client_name TEXT,
        plan_name TEXT,
        plan_price DOUBLE PRECISION,
        currency TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notifications_timestamp ON notifications (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_sales_records_date ON sales_records (date)",
]


def init_db():
    conn = get_conn()
    try:
        with conn:
            for statement in SCHEMA:
                conn.execute(statement)
            # Databases created before dedup keys existed.
            if _use_postgres():
                conn.execute("ALTER TABLE notifications ADD COLUMN IF NOT EXISTS dedup_key TEXT")
            else:
                info = conn.execute("PRAGMA table_info(notifications)").fetchall()
                cols = [row["name"] for row in info] if info else []
                if "dedup_key" not in cols:
                    conn.execute("ALTER TABLE notifications ADD COLUMN dedup_key TEXT")
    finally:
        conn.close()


def utc_now_iso():
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def get_json(table, key, default):
    conn = get_conn()
    try:
        row = conn.execute(f"SELECT value FROM {table} WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row["value"])
    finally:
        conn.close()


def set_json(table, key, value):
    payload = json.dumps(value, ensure_ascii=True)
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO {table} (key, value) VALUES (?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, payload),
            )
    finally:
        conn.close()


def fetch_all_settings():
    conn = get_conn()
    try:
        rows = conn.execute("SELECT key, value FROM settings").fetchall()
        return {row["key"]: row["value"] for row in rows}
    finally:
        conn.close()


JOB_STATUS_FIELDS = ("last_run_at", "last_success_at", "last_error", "last_error_at")


def update_job_status(job_name, **fields):
    """Upsert a job status row. Fields left as None keep their stored value."""
    unknown = set(fields) - set(JOB_STATUS_FIELDS)
    if unknown:
        raise TypeError(f"unknown job status fields: {', '.join(sorted(unknown))}")
    values = [fields.get(name) for name in JOB_STATUS_FIELDS]
    keep_stored = ", ".join(f"{name} = COALESCE(excluded.{name}, job_status.{name})" for name in JOB_STATUS_FIELDS)
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO job_status (job_name, {', '.join(JOB_STATUS_FIELDS)}) VALUES (?, ?, ?, ?, ?)"
                f" ON CONFLICT(job_name) DO UPDATE SET {keep_stored}",
                (job_name, *values),
            )
    finally:
        conn.close()


def get_job_status():
    conn = get_conn()
    try:
        rows = conn.execute("SELECT * FROM job_status ORDER BY job_name").fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


# Notifications


def list_notifications():
    conn = get_conn()
    try:
        rows = conn.execute(
            f"SELECT {', '.join(NOTIFICATION_COLUMNS)} FROM notifications ORDER BY timestamp DESC"
        ).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def get_notification(notification_id):
    conn = get_conn()
    try:
        row = conn.execute(
            f"SELECT {', '.join(NOTIFICATION_COLUMNS)} FROM notifications WHERE id = ?",
            (notification_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def insert_notification(notification):
    values = tuple(notification.get(col) for col in NOTIFICATION_COLUMNS)
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO notifications ({', '.join(NOTIFICATION_COLUMNS)})"
                f" VALUES ({', '.join('?' for _ in NOTIFICATION_COLUMNS)})",
                values,
            )
    finally:
        conn.close()


def mark_notification_read(notification_id):
    conn = get_conn()
    try:
        with conn:
            row = conn.execute("SELECT id FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            if not row:
                return False
            conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
        return True
    finally:
        conn.close()


def mark_all_notifications_read():
    conn = get_conn()
    try:
        with conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM notifications WHERE is_read = 0").fetchone()
            conn.execute("UPDATE notifications SET is_read = 1 WHERE is_read = 0")
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


def clear_notifications():
    conn = get_conn()
    try:
        with conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM notifications").fetchone()
            conn.execute("DELETE FROM notifications")
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


# Routers


def _router_row(row):
    data = dict(row)
    data["user"] = data.pop("username", "")
    data["port"] = int(data.get("port") or 0)
    data["use_tls"] = bool(data.get("use_tls"))
    return data


def list_routers():
    conn = get_conn()
    try:
        rows = conn.execute(f"SELECT {', '.join(ROUTER_COLUMNS)} FROM routers ORDER BY name").fetchall()
        return [_router_row(row) for row in rows]
    finally:
        conn.close()


def upsert_router(router):
    values = (
        router["id"],
        router["name"],
        router["host"],
        router["user"],
        router.get("password") or "",
        int(router["port"]),
        router.get("api_type") or "legacy",
        1 if router.get("use_tls") else 0,
    )
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO routers ({', '.join(ROUTER_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET"
                " name = excluded.name, host = excluded.host, username = excluded.username,"
                " password = excluded.password, port = excluded.port,"
                " api_type = excluded.api_type, use_tls = excluded.use_tls",
                values,
            )
    finally:
        conn.close()


def delete_router(router_id):
    conn = get_conn()
    try:
        with conn:
            row = conn.execute("SELECT id FROM routers WHERE id = ?", (router_id,)).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM routers WHERE id = ?", (router_id,))
        return True
    finally:
        conn.close()


# Sales records


def _sales_row(row):
    data = dict(row)
    return {api_key: data.get(col) for api_key, col in SALES_FIELD_MAP.items()}


def list_sales_records(since_iso=None):
    conn = get_conn()
    try:
        if since_iso:
            rows = conn.execute(
                f"SELECT {', '.join(SALES_COLUMNS)} FROM sales_records WHERE date >= ? ORDER BY date DESC",
                (since_iso,),
            ).fetchall()
        else:
            rows = conn.execute(
                f"SELECT {', '.join(SALES_COLUMNS)} FROM sales_records ORDER BY date DESC"
            ).fetchall()
        return [_sales_row(row) for row in rows]
    finally:
        conn.close()


def insert_sales_record(record):
    values = tuple(record.get(api_key) for api_key in SALES_FIELD_MAP)
    conn = get_conn()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO sales_records ({', '.join(SALES_COLUMNS)})"
                f" VALUES ({', '.join('?' for _ in SALES_COLUMNS)})",
                values,
            )
    finally:
        conn.close()
