import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


DEFAULT_CATEGORIES = [
    ("food", "Food & Dining"),
    ("groceries", "Groceries"),
    ("transport", "Transport"),
    ("shopping", "Shopping"),
    ("bills", "Bills & Utilities"),
    ("entertainment", "Entertainment"),
    ("health", "Health"),
    ("education", "Education"),
    ("transfer", "Transfer"),
    ("income", "Income"),
    ("other", "Other"),
]
REQUIRED_CATEGORIES = ("other",)

REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "email", "password_hash", "created_at"},
        "indexes": {"idx_users_email_unique"},
    },
    "categories": {
        "columns": {"code", "name", "created_at"},
        "indexes": set(),
    },
    "transactions": {
        "columns": {
            "id",
            "kind",
            "channel",
            "status",
            "merchant",
            "reference_id",
            "datetime_iso",
            "currency",
            "amount_rp",
            "fee_rp",
            "total_rp",
            "summary",
            "notes",
            "category_code",
            "raw_payload",
            "import_batch_id",
        },
        "indexes": {
            "uq_transactions_reference_id",
            "idx_transactions_datetime",
            "idx_transactions_category_code",
            "idx_transactions_import_batch_id",
        },
    },
    "import_batches": {
        "columns": {"id", "user_id", "filename", "row_count", "status", "error_message", "created_at"},
        "indexes": {"idx_import_batches_user_id"},
    },
    "budgets": {
        "columns": {"id", "user_id", "category_code", "amount_rp", "period_type", "is_active"},
        "indexes": {"idx_budgets_user_id", "idx_budgets_category_code"},
    },
    "settings": {
        "columns": {"id", "user_id", "setting_key", "setting_value"},
        "indexes": set(),
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


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            email TEXT NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            code TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id BIGINT NOT NULL,
            filename TEXT NOT NULL,
            row_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'processing', 'completed', 'failed')),
            error_message TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK(kind IN ('debit', 'credit')),
            channel TEXT NOT NULL,
            document_type TEXT,
            event_type TEXT,
            status TEXT NOT NULL,
            merchant TEXT,
            account_masked TEXT,
            reference_id TEXT,
            datetime_iso TEXT NOT NULL,
            currency TEXT NOT NULL DEFAULT 'IDR',
            amount_rp BIGINT NOT NULL DEFAULT 0 CHECK(amount_rp >= 0),
            fee_rp BIGINT NOT NULL DEFAULT 0,
            total_rp BIGINT NOT NULL DEFAULT 0 CHECK(total_rp >= 0),
            risk_flags TEXT,
            summary TEXT,
            notes TEXT,
            category_code TEXT NOT NULL DEFAULT 'other',
            raw_payload TEXT,
            import_batch_id BIGINT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT,
            FOREIGN KEY (category_code) REFERENCES categories (code),
            FOREIGN KEY (import_batch_id) REFERENCES import_batches (id) ON DELETE SET NULL
        )
        """,
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id BIGINT NOT NULL,
            category_code TEXT NOT NULL,
            amount_rp BIGINT NOT NULL CHECK(amount_rp >= 0),
            period_type TEXT NOT NULL DEFAULT 'monthly'
                CHECK(period_type IN ('monthly', 'weekly', 'yearly')),
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT,
            UNIQUE(user_id, category_code),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (category_code) REFERENCES categories (code) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id BIGINT NOT NULL,
            setting_key TEXT NOT NULL,
            setting_value TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT,
            UNIQUE(user_id, setting_key),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )


def migration_003(conn):
    create_index_if_missing(
        conn,
        "uq_transactions_reference_id",
        "CREATE UNIQUE INDEX uq_transactions_reference_id ON transactions(reference_id) WHERE reference_id IS NOT NULL",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_datetime",
        "CREATE INDEX idx_transactions_datetime ON transactions(datetime_iso)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_category_code",
        "CREATE INDEX idx_transactions_category_code ON transactions(category_code)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_import_batch_id",
        "CREATE INDEX idx_transactions_import_batch_id ON transactions(import_batch_id)",
    )
    create_index_if_missing(
        conn,
        "idx_import_batches_user_id",
        "CREATE INDEX idx_import_batches_user_id ON import_batches(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_budgets_user_id",
        "CREATE INDEX idx_budgets_user_id ON budgets(user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_budgets_category_code",
        "CREATE INDEX idx_budgets_category_code ON budgets(category_code)",
    )
    create_index_if_missing(
        conn,
        "idx_users_email_unique",
        "CREATE UNIQUE INDEX idx_users_email_unique ON users(email)",
    )


def migration_004(conn):
    # Imports and manual entries fall back to 'other', so it must always exist.
    created_at = utc_now_text()
    for code, name in DEFAULT_CATEGORIES:
        conn.execute(
            "INSERT INTO categories (code, name, created_at) VALUES (?, ?, ?) ON CONFLICT (code) DO NOTHING",
            (code, name, created_at),
        )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
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
                (version, utc_now_text()),
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
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    missing_categories = []
    if table_exists(conn, "categories"):
        present = {row[0] for row in conn.execute("SELECT code FROM categories").fetchall()}
        missing_categories = sorted(code for code in REQUIRED_CATEGORIES if code not in present)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes and not missing_categories,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
        "missing_categories": missing_categories,
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance ledger DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
