import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "bills": {
        "columns": {
            "id",
            "user_id",
            "name",
            "description",
            "amount",
            "transaction_type",
            "date",
            "category",
            "payment_method",
            "installment_number",
            "total_installments",
            "parent_transaction_id",
            "is_recurring",
            "is_essential",
            "status",
            "deleted_at",
            "created_at",
            "updated_at",
        },
        "indexes": {
            "idx_bills_user_date",
            "idx_bills_parent_transaction_id",
            "idx_bills_status",
        },
    },
    "import_staging": {
        "columns": {"id", "import_id", "user_id", "created_at", "row_json", "status"},
        "indexes": {"idx_import_staging_import_id", "idx_import_staging_created_at"},
    },
    "import_results": {
        "columns": {"id", "import_id", "user_id", "created_at", "result_json"},
        "indexes": {"idx_import_results_import_id"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS bills (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            amount REAL NOT NULL CHECK(amount >= 0),
            transaction_type TEXT NOT NULL CHECK(transaction_type IN ('income', 'expense')),
            date TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'other',
            payment_method TEXT NOT NULL DEFAULT 'other',
            installment_number INTEGER NOT NULL DEFAULT 1,
            total_installments INTEGER NOT NULL DEFAULT 1,
            parent_transaction_id TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            is_essential INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )


def migration_002(conn):
    # Soft delete: rows are flagged instead of removed.
    add_column_if_missing(conn, "bills", "status TEXT NOT NULL DEFAULT 'active'")
    add_column_if_missing(conn, "bills", "deleted_at TEXT")
    conn.execute("UPDATE bills SET status = 'active' WHERE status IS NULL OR TRIM(status) = ''")

    create_index_if_missing(
        conn,
        "idx_bills_user_date",
        "CREATE INDEX idx_bills_user_date ON bills(user_id, date)",
    )
    create_index_if_missing(
        conn,
        "idx_bills_parent_transaction_id",
        "CREATE INDEX idx_bills_parent_transaction_id ON bills(parent_transaction_id)",
    )
    create_index_if_missing(
        conn,
        "idx_bills_status",
        "CREATE INDEX idx_bills_status ON bills(status)",
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_staging (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT NOT NULL,
            user_id INTEGER,
            created_at TEXT NOT NULL,
            row_json TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'preview'
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_import_id",
        "CREATE INDEX idx_import_staging_import_id ON import_staging(import_id)",
    )
    create_index_if_missing(
        conn,
        "idx_import_staging_created_at",
        "CREATE INDEX idx_import_staging_created_at ON import_staging(created_at)",
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            result_json TEXT NOT NULL
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_import_results_import_id",
        "CREATE INDEX idx_import_results_import_id ON import_results(import_id)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check bill tracker DB schema health")
    parser.add_argument("db_path", nargs="?", default="instance/bill_tracker.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)
    print(json.dumps(get_db_health(config), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
