import sqlite3

from finance_ledger.db import rewrite_sql
from finance_ledger.db_migrations import (
    DEFAULT_CATEGORIES,
    MIGRATIONS,
    apply_migrations,
    ensure_table,
    get_db_health,
)


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []
    assert health["missing_categories"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    category_count = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
    conn.close()

    assert versions == [version for version, _ in MIGRATIONS]
    assert category_count == len(DEFAULT_CATEGORIES)


def test_seed_keeps_renamed_default_category(tmp_path):
    db_path = tmp_path / "renamed.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE categories SET name = 'Misc' WHERE code = 'other'")
    conn.execute("DELETE FROM schema_version WHERE version = 4")
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT name FROM categories WHERE code = 'other'").fetchone()
    conn.close()
    assert row[0] == "Misc"


def test_health_reports_missing_required_category(tmp_path):
    db_path = tmp_path / "no_other.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("DELETE FROM categories WHERE code = 'other'")
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))
    assert health["ok"] is False
    assert health["missing_categories"] == ["other"]


def test_health_reports_missing_index(tmp_path):
    db_path = tmp_path / "no_index.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("DROP INDEX uq_transactions_reference_id")
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))
    assert health["ok"] is False
    assert health["missing_indexes"] == ["uq_transactions_reference_id"]


def test_migrations_create_ledger_indexes(tmp_path):
    db_path = tmp_path / "indexes.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    conn.close()

    assert "uq_transactions_reference_id" in indexes
    assert "idx_transactions_datetime" in indexes
    assert "idx_import_batches_user_id" in indexes
    assert "idx_budgets_user_id" in indexes
    assert "idx_users_email_unique" in indexes


def test_reference_id_unique_only_when_present(tmp_path):
    db_path = tmp_path / "reference.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    insert_sql = (
        "INSERT INTO transactions (kind, channel, status, datetime_iso, reference_id) "
        "VALUES ('debit', 'bca', 'completed', '2026-01-15T00:00:00.000Z', ?)"
    )
    conn.execute(insert_sql, (None,))
    conn.execute(insert_sql, (None,))
    conn.execute(insert_sql, ("REF-1",))
    try:
        conn.execute(insert_sql, ("REF-1",))
    except sqlite3.IntegrityError as exc:
        assert str(exc).startswith("UNIQUE constraint failed")
    else:
        raise AssertionError("duplicate reference_id was accepted")
    finally:
        conn.close()


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_ensure_table_uses_bigserial_on_postgres():
    conn = _RecordingPostgresConnection()

    ensure_table(conn, "CREATE TABLE IF NOT EXISTS t (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)")

    assert conn.statements == ["CREATE TABLE IF NOT EXISTS t (id BIGSERIAL PRIMARY KEY, name TEXT)"]


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT * FROM t WHERE a = ? AND b = ?", (1, 2))
    assert sql == "SELECT * FROM t WHERE a = %s AND b = %s"
    assert params == (1, 2)

    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid() AS id", None)
    assert sql == "SELECT lastval() AS id"
    assert params == ()

    sql, params = rewrite_sql("sqlite", "SELECT ? AS x", (1,))
    assert sql == "SELECT ? AS x"
