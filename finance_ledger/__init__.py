import json
import os
from datetime import timezone
from functools import wraps
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from . import analytics
from .db import DB_ERRORS, INTEGRITY_ERRORS, connect_db, is_unique_violation, parse_database_config, row_to_dict
from .db_migrations import apply_migrations, get_db_health
from .errors import (
    DatabaseInitError,
    DuplicateConflict,
    InvalidFormat,
    LedgerError,
    MissingField,
    PersistenceFailure,
)
from .importer import ImportDefaults, build_preview, commit_import, partition_results, scan_import
from .ledger import (
    format_instant,
    insert_transaction,
    parse_instant,
    serialize_row,
    update_transaction,
    utc_now,
    validate_transaction_payload,
)
from .periods import (
    BUDGET_CYCLE_SETTING_KEY,
    DEFAULT_CYCLE_START_DAY,
    budget_period,
    resolve_cycle_start_day,
    validate_cycle_setting,
)

MIN_PASSWORD_LENGTH = 6
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 500
IMPORT_HISTORY_LIMIT = 50
PERIOD_TYPES = ("monthly", "weekly", "yearly")
SORTABLE_TRANSACTION_COLUMNS = ["datetime_iso", "amount_rp", "total_rp", "merchant", "category_code", "created_at"]

ERROR_STATUS = {
    MissingField: 400,
    InvalidFormat: 400,
    DuplicateConflict: 409,
    PersistenceFailure: 500,
}


def resolve_timezone(name):
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def public_user(row):
    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "created_at": row["created_at"],
    }


def serialize_setting(row):
    setting = row_to_dict(row)
    setting["setting_value"] = json.loads(setting["setting_value"])
    return setting


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_ledger.sqlite"),
        DATABASE_URL=None,
        MAX_CONTENT_LENGTH=10 * 1024 * 1024,
        TIMEZONE="UTC",
        BUDGET_CYCLE_DEFAULT_DAY=DEFAULT_CYCLE_START_DAY,
        IMPORT_DEFAULT_CATEGORY="other",
        IMPORT_DEFAULT_CHANNEL="csv_import",
        IMPORT_DEFAULT_STATUS="completed",
        IMPORT_DEFAULT_CURRENCY="IDR",
        IMPORT_DECIMAL_SEPARATOR=".",
        CREATE_DEFAULT_USER=False,
        DEFAULT_ADMIN_USERNAME="admin",
        DEFAULT_ADMIN_EMAIL="admin@example.com",
        DEFAULT_ADMIN_PASSWORD="admin123",
    )
    app.config.from_prefixed_env("FINANCE_LEDGER")

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    try:
        app_timezone = resolve_timezone(app.config["TIMEZONE"])
    except (ZoneInfoNotFoundError, ValueError):
        app.logger.warning("Unknown TIMEZONE %r, falling back to UTC", app.config["TIMEZONE"])
        app_timezone = timezone.utc

    ImportDefaults.from_config(app.config, app_timezone)

    def db_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL"))

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(db_config())
            except DB_ERRORS as exc:
                message = f"Unable to open database {db_config()['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def create_default_user():
        """Create the configured admin account and its settings unless it exists.

        Returns ``(user_id, created)``.
        """
        db = get_db()
        username = app.config["DEFAULT_ADMIN_USERNAME"]
        existing = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
        if existing is not None:
            return existing["id"], False

        now = format_instant(utc_now())
        db.execute(
            """
            INSERT INTO users (username, email, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                username,
                app.config["DEFAULT_ADMIN_EMAIL"],
                generate_password_hash(app.config["DEFAULT_ADMIN_PASSWORD"]),
                now,
                now,
            ),
        )
        user_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
        default_settings = {
            BUDGET_CYCLE_SETTING_KEY: {"day": app.config["BUDGET_CYCLE_DEFAULT_DAY"]},
            "dark_mode": {"enabled": True},
        }
        for key, value in default_settings.items():
            db.execute(
                """
                INSERT INTO settings (user_id, setting_key, setting_value, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, key, json.dumps(value), now, now),
            )
        db.commit()
        app.logger.warning("Created default user %r; change its password after first login", username)
        return user_id, True

    def init_db():
        try:
            apply_migrations(db_config())
            if app.config.get("CREATE_DEFAULT_USER"):
                create_default_user()
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {db_config()['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("create-default-user")
    def create_default_user_command():
        init_db()
        _, created = create_default_user()
        if created:
            print(f"Created user {app.config['DEFAULT_ADMIN_USERNAME']}.")
        else:
            print(f"User {app.config['DEFAULT_ADMIN_USERNAME']} already exists.")

    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc):
        status = ERROR_STATUS.get(type(exc), 400)
        return jsonify({"error": exc.message}), status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "timestamp": format_instant(utc_now())})

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(db_config()))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "missing_categories": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Authentication required"}), 401
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

    def json_body():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise InvalidFormat("Request body must be a JSON object")
        return payload

    def get_setting(db, key):
        row = db.execute(
            "SELECT setting_value FROM settings WHERE user_id = ? AND setting_key = ?",
            (g.user["id"], key),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["setting_value"])

    def current_budget_period(db):
        start_day = resolve_cycle_start_day(
            get_setting(db, BUDGET_CYCLE_SETTING_KEY),
            app.config["BUDGET_CYCLE_DEFAULT_DAY"],
        )
        return budget_period(start_day, tz=app_timezone)

    def import_defaults():
        return ImportDefaults.from_config(app.config, app_timezone)

    def date_bound(name):
        value = request.args.get(name)
        if not value:
            return None
        try:
            return format_instant(parse_instant(value, app_timezone))
        except InvalidFormat as exc:
            raise InvalidFormat(f"Invalid {name}: {value}", field=name) from exc

    def date_window():
        return date_bound("startDate"), date_bound("endDate")

    # Auth

    @app.post("/api/auth/register")
    def register():
        payload = json_body()
        username = str(payload.get("username") or "").strip()
        email = str(payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        missing = [name for name, value in (("username", username), ("email", email), ("password", password)) if not value]
        if missing:
            raise MissingField(f"Missing required fields: {', '.join(missing)}", field=missing[0])
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidFormat(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password")

        db = get_db()
        now = format_instant(utc_now())
        try:
            db.execute(
                """
                INSERT INTO users (username, email, password_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (username, email, generate_password_hash(password), now, now),
            )
        except INTEGRITY_ERRORS as exc:
            if is_unique_violation(exc):
                raise DuplicateConflict("Username or email already exists", field="username") from exc
            raise
        user_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
        db.commit()

        user = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        session.clear()
        session["user_id"] = user_id
        return jsonify({"message": "Registration successful", "data": public_user(user)}), 201

    @app.post("/api/auth/login")
    def login():
        payload = json_body()
        username = str(payload.get("username") or "").strip()
        password = payload.get("password") or ""
        if not username or not password:
            raise MissingField("Username and password are required", field="username")

        user = get_db().execute(
            "SELECT * FROM users WHERE username = ? OR email = ?",
            (username, username.lower()),
        ).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return jsonify({"error": "Invalid username or password"}), 401

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"message": "Login successful", "data": public_user(user)})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"message": "Logged out"})

    @app.get("/api/auth/me")
    @login_required
    def me():
        return jsonify({"data": public_user(g.user)})

    @app.post("/api/auth/change-password")
    @login_required
    def change_password():
        payload = json_body()
        current_password = payload.get("currentPassword") or ""
        new_password = payload.get("newPassword") or ""
        if not current_password or not new_password:
            raise MissingField("currentPassword and newPassword are required", field="newPassword")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise InvalidFormat(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="newPassword")
        if not check_password_hash(g.user["password_hash"], current_password):
            return jsonify({"error": "Current password is incorrect"}), 400

        db = get_db()
        db.execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (generate_password_hash(new_password), format_instant(utc_now()), g.user["id"]),
        )
        db.commit()
        return jsonify({"message": "Password changed successfully"})

    # Transactions

    def fetch_transaction(db, transaction_id):
        row = db.execute(
            """
            SELECT t.*, c.name AS category_name
            FROM transactions t
            LEFT JOIN categories c ON t.category_code = c.code
            WHERE t.id = ?
            """,
            (transaction_id,),
        ).fetchone()
        return serialize_row(row)

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        args = request.args
        page = max(args.get("page", 1, type=int), 1)
        limit = min(max(args.get("limit", DEFAULT_PAGE_SIZE, type=int), 1), MAX_PAGE_SIZE)

        conditions = []
        params = []
        for column in ("category", "channel", "status", "kind"):
            value = args.get(column)
            if value:
                conditions.append(f"t.{'category_code' if column == 'category' else column} = ?")
                params.append(value)
        if args.get("merchant"):
            conditions.append("LOWER(t.merchant) LIKE ?")
            params.append(f"%{args['merchant'].lower()}%")
        start, end = date_window()
        if start:
            conditions.append("t.datetime_iso >= ?")
            params.append(start)
        if end:
            conditions.append("t.datetime_iso <= ?")
            params.append(end)
        if args.get("search"):
            pattern = f"%{args['search'].lower()}%"
            conditions.append(
                "(LOWER(t.merchant) LIKE ? OR LOWER(t.summary) LIKE ? OR LOWER(t.reference_id) LIKE ?)"
            )
            params.extend([pattern, pattern, pattern])

        where_sql = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sort_column = args.get("sortBy", "datetime_iso")
        if sort_column not in SORTABLE_TRANSACTION_COLUMNS:
            sort_column = "datetime_iso"
        order = "ASC" if args.get("sortOrder", "DESC").upper() == "ASC" else "DESC"

        db = get_db()
        total = db.execute(f"SELECT COUNT(*) AS total FROM transactions t {where_sql}", tuple(params)).fetchone()["total"]
        rows = db.execute(
            f"""
            SELECT t.*, c.name AS category_name
            FROM transactions t
            LEFT JOIN categories c ON t.category_code = c.code
            {where_sql}
            ORDER BY t.{sort_column} {order}, t.id {order}
            LIMIT ? OFFSET ?
            """,
            tuple(params) + (limit, (page - 1) * limit),
        ).fetchall()
        return jsonify({
            "data": [serialize_row(row) for row in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": -(-total // limit),
            },
        })

    @app.get("/api/transactions/stats/summary")
    @login_required
    def transaction_summary():
        return jsonify({
            "data": analytics.transaction_stats(get_db(), *date_window())
        })

    @app.get("/api/transactions/<int:transaction_id>")
    @login_required
    def get_transaction(transaction_id):
        transaction = fetch_transaction(get_db(), transaction_id)
        if transaction is None:
            return jsonify({"error": "Transaction not found"}), 404
        return jsonify({"data": transaction})

    @app.post("/api/transactions")
    @login_required
    def create_transaction():
        payload = json_body()
        values = validate_transaction_payload(payload, tz=app_timezone)
        db = get_db()
        try:
            transaction_id = insert_transaction(db, values, raw_payload=payload)
        except INTEGRITY_ERRORS as exc:
            raise InvalidFormat(f"Unknown category_code {values['category_code']!r}", field="category_code") from exc
        db.commit()
        return jsonify({"data": fetch_transaction(db, transaction_id)}), 201

    @app.put("/api/transactions/<int:transaction_id>")
    @login_required
    def edit_transaction(transaction_id):
        values = validate_transaction_payload(json_body(), partial=True, tz=app_timezone)
        db = get_db()
        if fetch_transaction(db, transaction_id) is None:
            return jsonify({"error": "Transaction not found"}), 404
        try:
            update_transaction(db, transaction_id, values)
        except INTEGRITY_ERRORS as exc:
            raise InvalidFormat("Transaction update violates a constraint", field="category_code") from exc
        db.commit()
        return jsonify({"data": fetch_transaction(db, transaction_id)})

    @app.delete("/api/transactions/<int:transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        db = get_db()
        result = db.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
        if result.rowcount == 0:
            return jsonify({"error": "Transaction not found"}), 404
        db.commit()
        return jsonify({"message": "Transaction deleted successfully"})

    # Categories

    @app.get("/api/categories")
    @login_required
    def list_categories():
        rows = get_db().execute("SELECT * FROM categories ORDER BY name ASC").fetchall()
        return jsonify({"data": [row_to_dict(row) for row in rows]})

    @app.get("/api/categories/with-stats")
    @login_required
    def categories_with_stats():
        return jsonify({
            "data": analytics.category_stats(get_db(), *date_window())
        })

    @app.post("/api/categories")
    @login_required
    def create_category():
        payload = json_body()
        code = str(payload.get("code") or "").strip()
        name = str(payload.get("name") or "").strip()
        if not code or not name:
            raise MissingField("Code and name are required", field="code" if not code else "name")

        db = get_db()
        try:
            db.execute(
                "INSERT INTO categories (code, name, created_at) VALUES (?, ?, ?)",
                (code, name, format_instant(utc_now())),
            )
        except INTEGRITY_ERRORS as exc:
            if is_unique_violation(exc):
                raise DuplicateConflict("Category with this code already exists", field="code") from exc
            raise
        db.commit()
        row = db.execute("SELECT * FROM categories WHERE code = ?", (code,)).fetchone()
        return jsonify({"data": row_to_dict(row)}), 201

    @app.put("/api/categories/<code>")
    @login_required
    def edit_category(code):
        name = str(json_body().get("name") or "").strip()
        if not name:
            raise MissingField("Category name is required", field="name")

        db = get_db()
        result = db.execute("UPDATE categories SET name = ? WHERE code = ?", (name, code))
        if result.rowcount == 0:
            return jsonify({"error": "Category not found"}), 404
        db.commit()
        row = db.execute("SELECT * FROM categories WHERE code = ?", (code,)).fetchone()
        return jsonify({"data": row_to_dict(row)})

    @app.delete("/api/categories/<code>")
    @login_required
    def delete_category(code):
        db = get_db()
        in_use = db.execute(
            "SELECT COUNT(*) AS count FROM transactions WHERE category_code = ?", (code,)
        ).fetchone()["count"]
        if in_use:
            return jsonify({"error": "Cannot delete category that is in use by transactions"}), 400

        result = db.execute("DELETE FROM categories WHERE code = ?", (code,))
        if result.rowcount == 0:
            return jsonify({"error": "Category not found"}), 404
        db.commit()
        return jsonify({"message": "Category deleted successfully"})

    # Budgets

    @app.get("/api/budgets")
    @login_required
    def list_budgets():
        db = get_db()
        return jsonify({
            "data": analytics.budgets_with_spending(db, g.user["id"]),
            "period": current_budget_period(db).to_dict(),
        })

    @app.get("/api/budgets/summary")
    @login_required
    def budgets_summary():
        db = get_db()
        return jsonify({
            "data": analytics.budget_summary(db, g.user["id"]),
            "period": current_budget_period(db).to_dict(),
        })

    def validate_period_type(value):
        if value not in PERIOD_TYPES:
            raise InvalidFormat(f"period_type must be one of: {', '.join(PERIOD_TYPES)}", field="period_type")
        return value

    def coerce_budget_amount(value):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidFormat("amount_rp must be a non-negative integer", field="amount_rp")
        return value

    @app.post("/api/budgets")
    @login_required
    def upsert_budget():
        payload = json_body()
        category_code = payload.get("category_code")
        amount_rp = payload.get("amount_rp")
        if not category_code or not amount_rp:
            raise MissingField("category_code and amount_rp are required", field="category_code")
        amount_rp = coerce_budget_amount(amount_rp)
        period_type = validate_period_type(payload.get("period_type") or "monthly")

        db = get_db()
        now = format_instant(utc_now())
        try:
            db.execute(
                """
                INSERT INTO budgets (user_id, category_code, amount_rp, period_type, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (user_id, category_code) DO UPDATE SET
                    amount_rp = excluded.amount_rp,
                    period_type = excluded.period_type,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (g.user["id"], category_code, amount_rp, period_type, now, now),
            )
        except INTEGRITY_ERRORS as exc:
            raise InvalidFormat(f"Unknown category_code {category_code!r}", field="category_code") from exc
        db.commit()
        row = db.execute(
            "SELECT * FROM budgets WHERE user_id = ? AND category_code = ?",
            (g.user["id"], category_code),
        ).fetchone()
        return jsonify({"data": analytics.serialize_budget(row)}), 201

    @app.put("/api/budgets/<int:budget_id>")
    @login_required
    def edit_budget(budget_id):
        payload = json_body()
        updates = {}
        if payload.get("amount_rp") is not None:
            updates["amount_rp"] = coerce_budget_amount(payload["amount_rp"])
        if payload.get("period_type") is not None:
            updates["period_type"] = validate_period_type(payload["period_type"])
        if payload.get("is_active") is not None:
            updates["is_active"] = 1 if payload["is_active"] else 0

        db = get_db()
        set_parts = [f"{column} = ?" for column in updates] + ["updated_at = ?"]
        params = list(updates.values()) + [format_instant(utc_now()), budget_id, g.user["id"]]
        result = db.execute(
            f"UPDATE budgets SET {', '.join(set_parts)} WHERE id = ? AND user_id = ?",
            tuple(params),
        )
        if result.rowcount == 0:
            return jsonify({"error": "Budget not found"}), 404
        db.commit()
        row = db.execute("SELECT * FROM budgets WHERE id = ?", (budget_id,)).fetchone()
        return jsonify({"data": analytics.serialize_budget(row)})

    @app.delete("/api/budgets/<int:budget_id>")
    @login_required
    def delete_budget(budget_id):
        db = get_db()
        result = db.execute("DELETE FROM budgets WHERE id = ? AND user_id = ?", (budget_id, g.user["id"]))
        if result.rowcount == 0:
            return jsonify({"error": "Budget not found"}), 404
        db.commit()
        return jsonify({"message": "Budget deleted successfully"})

    # Settings

    @app.get("/api/settings")
    @login_required
    def list_settings():
        rows = get_db().execute(
            "SELECT setting_key, setting_value FROM settings WHERE user_id = ? ORDER BY setting_key",
            (g.user["id"],),
        ).fetchall()
        return jsonify({"data": {row["setting_key"]: json.loads(row["setting_value"]) for row in rows}})

    @app.get("/api/settings/<key>")
    @login_required
    def get_setting_value(key):
        value = get_setting(get_db(), key)
        if value is None:
            return jsonify({"error": "Setting not found"}), 404
        return jsonify({"data": value})

    @app.put("/api/settings/<key>")
    @login_required
    def put_setting(key):
        payload = json_body()
        if payload.get("value") is None:
            raise MissingField("Value is required", field="value")
        value = payload["value"]
        if key == BUDGET_CYCLE_SETTING_KEY:
            value = validate_cycle_setting(value)

        db = get_db()
        now = format_instant(utc_now())
        db.execute(
            """
            INSERT INTO settings (user_id, setting_key, setting_value, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id, setting_key) DO UPDATE SET
                setting_value = excluded.setting_value,
                updated_at = excluded.updated_at
            """,
            (g.user["id"], key, json.dumps(value), now, now),
        )
        db.commit()
        row = db.execute(
            "SELECT * FROM settings WHERE user_id = ? AND setting_key = ?",
            (g.user["id"], key),
        ).fetchone()
        return jsonify({"data": serialize_setting(row)})

    @app.delete("/api/settings/<key>")
    @login_required
    def delete_setting(key):
        db = get_db()
        result = db.execute(
            "DELETE FROM settings WHERE user_id = ? AND setting_key = ?",
            (g.user["id"], key),
        )
        if result.rowcount == 0:
            return jsonify({"error": "Setting not found"}), 404
        db.commit()
        return jsonify({"message": "Setting deleted successfully"})

    # CSV import

    def uploaded_file():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            raise MissingField("No file uploaded", field="file")
        return upload

    @app.post("/api/import/preview")
    @login_required
    def import_preview():
        upload = uploaded_file()
        scan = scan_import(upload.read(), import_defaults())
        return jsonify(build_preview(scan))

    @app.post("/api/import/commit")
    @login_required
    def import_commit():
        upload = uploaded_file()
        scan = scan_import(upload.read(), import_defaults())
        parsed, _ = partition_results(scan.results)
        if not parsed:
            return jsonify({"error": "No valid rows found in CSV"}), 400
        return jsonify(commit_import(get_db(), g.user["id"], upload.filename, scan))

    @app.get("/api/import/history")
    @login_required
    def import_history():
        rows = get_db().execute(
            """
            SELECT id, filename, row_count, status, error_message, created_at
            FROM import_batches
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (g.user["id"], IMPORT_HISTORY_LIMIT),
        ).fetchall()
        return jsonify({"data": [row_to_dict(row) for row in rows]})

    @app.delete("/api/import/batches/<int:batch_id>")
    @login_required
    def delete_import_batch(batch_id):
        db = get_db()
        result = db.execute(
            "DELETE FROM import_batches WHERE id = ? AND user_id = ?",
            (batch_id, g.user["id"]),
        )
        if result.rowcount == 0:
            return jsonify({"error": "Import batch not found"}), 404
        db.commit()
        return jsonify({"message": "Import batch deleted successfully"})

    # Analytics

    @app.get("/api/analytics/overview")
    @login_required
    def analytics_overview():
        db = get_db()
        period = current_budget_period(db)
        return jsonify({
            "period": {
                "startDay": period.start_day,
                "startDate": format_instant(period.start),
                "endDate": format_instant(period.end),
            },
            "summary": analytics.summary_totals(db),
            "categoryBreakdown": analytics.category_breakdown(db),
            "dailyTrend": analytics.daily_trend(db),
            "recentTransactions": analytics.recent_transactions(db),
            "channelBreakdown": analytics.channel_breakdown(db),
            "topMerchants": analytics.top_merchants(db),
        })

    @app.get("/api/analytics/monthly")
    @login_required
    def analytics_monthly():
        return jsonify({"data": analytics.monthly_comparison(get_db(), utc_now())})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
