import os
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


DATABASE_ERRORS = (sqlite3.Error,) + ((psycopg.Error,) if psycopg is not None else ())
INTEGRITY_ERRORS = (sqlite3.IntegrityError,) + ((psycopg.IntegrityError,) if psycopg is not None else ())


class CompatRow:
    """Postgres tuple row that also answers to column names, like sqlite3.Row."""

    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        return self._adapt_row(self._cursor.fetchone())

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return CompatRow(columns, row)


class CompatConnection:
    """One connection API over sqlite3 and psycopg; SQL is always written with ? placeholders."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        rewritten_sql, rewritten_params = rewrite_sql(self.backend, sql, params)
        return CompatCursor(self._conn.execute(rewritten_sql, rewritten_params or ()))

    def last_insert_id(self):
        return self.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]

    def close(self):
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def __enter__(self):
        self._conn.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._conn.__exit__(exc_type, exc, tb)


def is_postgres_url(value):
    return bool(value) and value.startswith(("postgresql://", "postgres://"))


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params

    rewritten_sql = sql.replace("last_insert_rowid()", "lastval()")
    if "?" in rewritten_sql:
        rewritten_sql = "%s".join(rewritten_sql.split("?"))

    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return rewritten_sql, params


def parse_database_config(database_path=None, database_url=None):
    db_url = (database_url or os.environ.get("DATABASE_URL", "")).strip()
    if is_postgres_url(db_url):
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": urlparse(db_url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return CompatConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, backend="sqlite")
