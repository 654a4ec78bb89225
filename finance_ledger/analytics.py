"""Read-only aggregate queries over the transactions table.

Totals are summed in SQL and returned as ints; nothing is cached.
"""

from .ledger import format_instant, serialize_row
from .periods import shift_months

TOP_LIMIT = 10
RECENT_LIMIT = 5
MONTHLY_WINDOW_MONTHS = 6


def _int(value):
    return int(value or 0)


def _date_window(start=None, end=None, column="datetime_iso"):
    parts = []
    params = []
    if start and end:
        parts.append(f"{column} >= ? AND {column} <= ?")
        params.extend([start, end])
    return parts, params


def summary_totals(db):
    row = db.execute(
        """
        SELECT
            COALESCE(SUM(CASE WHEN kind = 'credit' THEN total_rp ELSE 0 END), 0) AS total_income,
            COALESCE(SUM(total_rp), 0) AS total_expense,
            COUNT(*) AS transaction_count
        FROM transactions
        """
    ).fetchone()
    total_income = _int(row["total_income"])
    total_expense = _int(row["total_expense"])
    return {
        "totalIncome": total_income,
        "totalExpense": total_expense,
        "balance": total_income - total_expense,
        "transactionCount": _int(row["transaction_count"]),
    }


def category_breakdown(db, limit=TOP_LIMIT):
    rows = db.execute(
        """
        SELECT c.code, c.name, COALESCE(SUM(t.total_rp), 0) AS total, COUNT(t.id) AS count
        FROM categories c
        LEFT JOIN transactions t ON c.code = t.category_code
        GROUP BY c.code, c.name
        HAVING COALESCE(SUM(t.total_rp), 0) > 0
        ORDER BY total DESC, c.code ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [
        {"code": row["code"], "name": row["name"], "total": _int(row["total"]), "count": _int(row["count"])}
        for row in rows
    ]


def daily_trend(db):
    rows = db.execute(
        """
        SELECT
            substr(datetime_iso, 1, 10) AS day,
            COALESCE(SUM(total_rp), 0) AS expense,
            COALESCE(SUM(CASE WHEN kind = 'credit' THEN total_rp ELSE 0 END), 0) AS income
        FROM transactions
        GROUP BY substr(datetime_iso, 1, 10)
        ORDER BY day ASC
        """
    ).fetchall()
    return [{"date": row["day"], "expense": _int(row["expense"]), "income": _int(row["income"])} for row in rows]


def channel_breakdown(db):
    rows = db.execute(
        """
        SELECT channel, COALESCE(SUM(total_rp), 0) AS total, COUNT(*) AS count
        FROM transactions
        GROUP BY channel
        ORDER BY total DESC, channel ASC
        """
    ).fetchall()
    return [{"channel": row["channel"], "total": _int(row["total"]), "count": _int(row["count"])} for row in rows]


def top_merchants(db, limit=TOP_LIMIT):
    rows = db.execute(
        """
        SELECT merchant, COALESCE(SUM(total_rp), 0) AS total, COUNT(*) AS count
        FROM transactions
        WHERE merchant IS NOT NULL
        GROUP BY merchant
        ORDER BY total DESC, merchant ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [{"merchant": row["merchant"], "total": _int(row["total"]), "count": _int(row["count"])} for row in rows]


def recent_transactions(db, limit=RECENT_LIMIT):
    rows = db.execute(
        """
        SELECT t.*, c.name AS category_name
        FROM transactions t
        LEFT JOIN categories c ON t.category_code = c.code
        ORDER BY t.datetime_iso DESC, t.id DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [serialize_row(row) for row in rows]


def monthly_comparison(db, now, months=MONTHLY_WINDOW_MONTHS):
    cutoff = format_instant(shift_months(now, -months))
    rows = db.execute(
        """
        SELECT
            substr(datetime_iso, 1, 7) AS month,
            COALESCE(SUM(CASE WHEN kind = 'credit' THEN total_rp ELSE 0 END), 0) AS income,
            COALESCE(SUM(CASE WHEN kind = 'debit' THEN total_rp ELSE 0 END), 0) AS expense
        FROM transactions
        WHERE datetime_iso >= ?
        GROUP BY substr(datetime_iso, 1, 7)
        ORDER BY month ASC
        """,
        (cutoff,),
    ).fetchall()
    result = []
    for row in rows:
        income = _int(row["income"])
        expense = _int(row["expense"])
        result.append({"month": row["month"], "income": income, "expense": expense, "savings": income - expense})
    return result


def transaction_stats(db, start=None, end=None):
    where_parts, params = _date_window(start, end)
    where_sql = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""
    row = db.execute(
        f"""
        SELECT
            COALESCE(SUM(CASE WHEN kind = 'credit' THEN total_rp ELSE 0 END), 0) AS total_income,
            COALESCE(SUM(CASE WHEN kind = 'debit' THEN total_rp ELSE 0 END), 0) AS total_expense,
            COUNT(*) AS total_transactions
        FROM transactions
        {where_sql}
        """,
        tuple(params),
    ).fetchone()
    return {
        "total_income": _int(row["total_income"]),
        "total_expense": _int(row["total_expense"]),
        "total_transactions": _int(row["total_transactions"]),
    }


def category_stats(db, start=None, end=None):
    join_parts, params = _date_window(start, end, column="t.datetime_iso")
    join_filter = f"AND {' AND '.join(join_parts)}" if join_parts else ""
    rows = db.execute(
        f"""
        SELECT
            c.code,
            c.name,
            c.created_at,
            COALESCE(SUM(CASE WHEN t.kind = 'debit' THEN t.total_rp ELSE 0 END), 0) AS total_expense,
            COALESCE(SUM(CASE WHEN t.kind = 'credit' THEN t.total_rp ELSE 0 END), 0) AS total_income,
            COUNT(t.id) AS transaction_count
        FROM categories c
        LEFT JOIN transactions t ON c.code = t.category_code {join_filter}
        GROUP BY c.code, c.name, c.created_at
        ORDER BY total_expense DESC, c.code ASC
        """,
        tuple(params),
    ).fetchall()
    return [
        {
            "code": row["code"],
            "name": row["name"],
            "created_at": row["created_at"],
            "total_expense": _int(row["total_expense"]),
            "total_income": _int(row["total_income"]),
            "transaction_count": _int(row["transaction_count"]),
        }
        for row in rows
    ]


def budgets_with_spending(db, user_id):
    rows = db.execute(
        """
        SELECT
            b.*,
            c.name AS category_name,
            COALESCE(
                (SELECT SUM(t.total_rp) FROM transactions t WHERE t.category_code = b.category_code),
                0
            ) AS actual_spent
        FROM budgets b
        JOIN categories c ON b.category_code = c.code
        WHERE b.user_id = ? AND b.is_active = 1
        ORDER BY b.amount_rp DESC, b.id ASC
        """,
        (user_id,),
    ).fetchall()
    budgets = []
    for row in rows:
        budget = serialize_budget(row)
        budget["actual_spent"] = _int(row["actual_spent"])
        budgets.append(budget)
    return budgets


def budget_summary(db, user_id):
    total_budget = db.execute(
        "SELECT COALESCE(SUM(amount_rp), 0) AS total FROM budgets WHERE user_id = ? AND is_active = 1",
        (user_id,),
    ).fetchone()["total"]
    total_spent = db.execute(
        """
        SELECT COALESCE(SUM(t.total_rp), 0) AS total
        FROM transactions t
        JOIN budgets b ON t.category_code = b.category_code
        WHERE b.user_id = ? AND b.is_active = 1
        """,
        (user_id,),
    ).fetchone()["total"]
    total_all_spent = db.execute("SELECT COALESCE(SUM(total_rp), 0) AS total FROM transactions").fetchone()["total"]
    return {
        "totalBudget": _int(total_budget),
        "totalSpent": _int(total_spent),
        "totalAllSpent": _int(total_all_spent),
        "remaining": _int(total_budget) - _int(total_spent),
    }


def serialize_budget(row):
    budget = serialize_row(row)
    budget["is_active"] = bool(budget.get("is_active"))
    budget.pop("actual_spent", None)
    return budget
