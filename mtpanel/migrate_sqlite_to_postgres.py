import argparse
import logging
import os
import sqlite3
import sys

import psycopg2
from psycopg2.extras import execute_values

from . import db
from .db import JOB_STATUS_FIELDS, NOTIFICATION_COLUMNS, ROUTER_COLUMNS, SALES_COLUMNS

logger = logging.getLogger(__name__)

TABLE_SPECS = [
    ("settings", ["key", "value"]),
    ("job_status", ["job_name", *JOB_STATUS_FIELDS]),
    ("routers", list(ROUTER_COLUMNS)),
    ("notifications", list(NOTIFICATION_COLUMNS)),
    ("sales_records", list(SALES_COLUMNS)),
]


def _env(name, default=""):
    return (os.environ.get(name) or default or "").strip()


def _sqlite_columns(sqlite_con, table):
    return {row["name"] for row in sqlite_con.execute(f"PRAGMA table_info({table})").fetchall()}


def copy_table(sqlite_con, pg_con, table, cols, batch_size=5000):
    present = _sqlite_columns(sqlite_con, table)
    if not present:
        logger.info("[%s] missing in source, skipped", table)
        return 0
    # Older source databases may lack newer columns (dedup_key); copy them as NULL.
    select_cols = ", ".join(col if col in present else f"NULL AS {col}" for col in cols)
    insert_sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES %s"
    cursor = sqlite_con.execute(f"SELECT {select_cols} FROM {table}")
    copied = 0
    with pg_con.cursor() as pcur:
        while True:
            rows = cursor.fetchmany(batch_size)
            if not rows:
                break
            execute_values(pcur, insert_sql, [tuple(row) for row in rows], page_size=batch_size)
            copied += len(rows)
    pg_con.commit()
    logger.info("[%s] copied %d rows", table, copied)
    return copied


def truncate_all(pg_con):
    with pg_con.cursor() as cur:
        cur.execute(f"TRUNCATE TABLE {', '.join(table for table, _ in TABLE_SPECS)}")
    pg_con.commit()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Copy panel data from SQLite into Postgres.")
    parser.add_argument("--sqlite-path", default=_env("PANEL_DB_PATH", "/data/mtpanel.db"))
    parser.add_argument("--postgres-dsn", default=_env("PANEL_DATABASE_URL", _env("DATABASE_URL")))
    parser.add_argument("--batch-size", type=int, default=5000)
    parser.add_argument("--no-truncate", action="store_true", help="Keep existing Postgres rows.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format="%(message)s")

    if not args.postgres_dsn:
        print("ERROR: PANEL_DATABASE_URL is not set.", file=sys.stderr)
        return 2
    if not os.path.exists(args.sqlite_path):
        print(f"ERROR: SQLite db not found at {args.sqlite_path}", file=sys.stderr)
        return 2

    db.DB_URL = args.postgres_dsn
    db.init_db()

    sqlite_con = sqlite3.connect(args.sqlite_path)
    sqlite_con.row_factory = sqlite3.Row
    pg_con = psycopg2.connect(args.postgres_dsn)
    try:
        if not args.no_truncate:
            truncate_all(pg_con)
        for table, cols in TABLE_SPECS:
            copy_table(sqlite_con, pg_con, table, cols, batch_size=max(args.batch_size, 100))
    finally:
        sqlite_con.close()
        pg_con.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
