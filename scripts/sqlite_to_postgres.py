#!/usr/bin/env python3
"""Copy bill tracker data from a SQLite file into a migrated Postgres database.

Run the app (or ``flask init-db``) against Postgres first so the schema exists.
"""

import os
import sqlite3
import sys
from pathlib import Path

import psycopg
from psycopg import sql

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from bill_tracker.db import is_postgres_url

TABLE_ORDER = ["users", "bills", "import_results", "import_staging"]
OPTIONAL_TABLES = {"import_results", "import_staging"}


def resolve_sqlite_path():
    env_path = os.environ.get("SQLITE_PATH", "").strip()
    if env_path:
        return Path(env_path)
    return Path("instance/bill_tracker.sqlite")


def sqlite_table_exists(conn, table_name):
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table_name,)).fetchone()
    return row is not None


def pg_columns(conn, table_name):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            ORDER BY ordinal_position
            """,
            (table_name,),
        )
        return [row[0] for row in cur.fetchall()]


def copy_table(sqlite_conn, pg_conn, table_name):
    if not sqlite_table_exists(sqlite_conn, table_name):
        if table_name in OPTIONAL_TABLES:
            return {"source_rows": 0, "copied_rows": 0, "status": "skipped (missing in SQLite)"}
        raise RuntimeError(f"Required source table is missing in SQLite: {table_name}")

    dst_cols = pg_columns(pg_conn, table_name)
    if not dst_cols:
        raise RuntimeError(f"Destination table is missing in Postgres: {table_name}")

    src_cols = [row[1] for row in sqlite_conn.execute(f"PRAGMA table_info({table_name})").fetchall()]
    common_cols = [col for col in src_cols if col in dst_cols]
    rows = [tuple(row) for row in sqlite_conn.execute(f"SELECT {', '.join(common_cols)} FROM {table_name}").fetchall()]
    if not rows:
        return {"source_rows": 0, "copied_rows": 0, "status": "copied"}

    insert_sql = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values}) ON CONFLICT DO NOTHING").format(
        table=sql.Identifier(table_name),
        columns=sql.SQL(", ").join(sql.Identifier(col) for col in common_cols),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in common_cols),
    )
    with pg_conn.cursor() as cur:
        cur.executemany(insert_sql, rows)
    return {"source_rows": len(rows), "copied_rows": len(rows), "status": "copied"}


def reset_sequence(pg_conn, table_name):
    with pg_conn.cursor() as cur:
        cur.execute("SELECT pg_get_serial_sequence(%s, 'id')", (table_name,))
        seq_name = cur.fetchone()[0]
        if not seq_name:
            return
        cur.execute(sql.SQL("SELECT COALESCE(MAX(id), 0) FROM {}").format(sql.Identifier(table_name)))
        max_id = int(cur.fetchone()[0])
        if max_id == 0:
            cur.execute("SELECT setval(%s, 1, false)", (seq_name,))
        else:
            cur.execute("SELECT setval(%s, %s, true)", (seq_name, max_id))


def main():
    sqlite_path = resolve_sqlite_path()
    if not sqlite_path.exists():
        raise SystemExit(f"SQLite database not found at {sqlite_path}. Set SQLITE_PATH to the correct source file.")

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not is_postgres_url(database_url):
        raise SystemExit("DATABASE_URL must start with postgres:// or postgresql://")

    print(f"Using SQLite source: {sqlite_path}")
    sqlite_conn = sqlite3.connect(str(sqlite_path))
    try:
        with psycopg.connect(database_url) as pg_conn:
            for table_name in TABLE_ORDER:
                result = copy_table(sqlite_conn, pg_conn, table_name)
                if result["status"] == "copied":
                    reset_sequence(pg_conn, table_name)
                print(f"- {table_name}: source={result['source_rows']} copied={result['copied_rows']} status={result['status']}")
    finally:
        sqlite_conn.close()


if __name__ == "__main__":
    main()
