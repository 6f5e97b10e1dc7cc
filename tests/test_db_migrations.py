import json
import sqlite3

from bill_tracker.db_migrations import (
    MIGRATIONS,
    add_column_if_missing,
    apply_migrations,
    get_db_health,
    inspect_db_health,
    main,
)


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _FakePostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        return _FakeCursor()


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_twice_is_noop(tmp_path):
    db_path = tmp_path / "twice.sqlite"
    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [1, 2, 3]


def test_apply_migrations_on_legacy_bills_table(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO users(username, password_hash) VALUES ('alice', 'hash');

        CREATE TABLE bills (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            amount REAL NOT NULL,
            transaction_type TEXT NOT NULL,
            date TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'other',
            payment_method TEXT NOT NULL DEFAULT 'other',
            installment_number INTEGER NOT NULL DEFAULT 1,
            total_installments INTEGER NOT NULL DEFAULT 1,
            parent_transaction_id TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            is_essential INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO bills(user_id, name, amount, transaction_type, date)
        VALUES (1, 'Rent', 900, 'expense', '2024-03-01');
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT name, status, deleted_at FROM bills WHERE id = 1").fetchone()
    conn.close()
    assert row == ("Rent", "active", None)


def test_health_reports_missing_pieces(tmp_path):
    conn = sqlite3.connect(tmp_path / "partial.sqlite")
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, username TEXT)")

    health = inspect_db_health(conn)
    conn.close()

    assert health["ok"] is False
    assert health["schema_version"] == 0
    assert "bills" in health["missing_tables"]
    assert health["missing_columns"]["users"] == ["created_at", "password_hash"]
    assert "idx_bills_user_date" in health["missing_indexes"]


def test_migration_003_creates_import_tables(tmp_path):
    db_path = tmp_path / "staging.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    assert {"import_staging", "import_results"} <= tables

    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    assert "idx_import_staging_import_id" in indexes
    assert "idx_import_staging_created_at" in indexes
    assert "idx_import_results_import_id" in indexes
    conn.close()


def test_add_column_if_missing_uses_if_not_exists_on_postgres():
    conn = _FakePostgresConnection()

    add_column_if_missing(conn, "bills", "deleted_at TEXT")

    assert conn.statements == ["ALTER TABLE bills ADD COLUMN IF NOT EXISTS deleted_at TEXT"]


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_main_migrates_and_prints_health(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "cli.sqlite"

    main([str(db_path), "--migrate"])

    health = json.loads(capsys.readouterr().out)
    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
