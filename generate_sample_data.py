import random
from datetime import timedelta

from finance_ledger import create_app
from finance_ledger.errors import DuplicateConflict
from finance_ledger.ledger import format_instant, insert_transaction, utc_now

MERCHANTS = {
    "food": ["Warung Makan Sederhana", "Kopi Kenangan", "GrabFood"],
    "groceries": ["Indomaret", "Alfamart", "Superindo"],
    "transport": ["Gojek", "Grab", "Pertamina"],
    "shopping": ["Tokopedia", "Shopee"],
    "bills": ["PLN", "Telkomsel", "PDAM"],
    "entertainment": ["Netflix", "CGV"],
}
CHANNELS = ["bca", "mandiri", "gopay", "ovo"]


def sample_transactions(start):
    for i in range(60):
        category = random.choice(list(MERCHANTS))
        amount = random.randrange(10_000, 500_000, 500)
        yield {
            "kind": "debit",
            "channel": random.choice(CHANNELS),
            "status": "completed",
            "merchant": random.choice(MERCHANTS[category]),
            "reference_id": f"SAMPLE-{i + 1:04d}",
            "datetime_iso": format_instant(start + timedelta(days=i * 1.5)),
            "currency": "IDR",
            "amount_rp": amount,
            "fee_rp": 0,
            "total_rp": amount,
            "risk_flags": [],
            "summary": f"Sample expense {i + 1}",
            "category_code": category,
        }

    for month in range(3):
        yield {
            "kind": "credit",
            "channel": "bca",
            "status": "completed",
            "merchant": "Salary",
            "reference_id": f"SAMPLE-SALARY-{month + 1}",
            "datetime_iso": format_instant(start + timedelta(days=month * 30 + 1)),
            "currency": "IDR",
            "amount_rp": 12_000_000,
            "fee_rp": 0,
            "total_rp": 12_000_000,
            "risk_flags": [],
            "category_code": "income",
        }


def seed(db, start=None):
    """Insert the sample rows, skipping references that already exist.

    Returns ``(inserted, skipped)``.
    """
    inserted = skipped = 0
    for values in sample_transactions(start or utc_now() - timedelta(days=90)):
        try:
            with db.savepoint("sample_row"):
                insert_transaction(db, values)
        except DuplicateConflict:
            skipped += 1
        else:
            inserted += 1
    db.commit()
    return inserted, skipped


def main():
    app = create_app({"CREATE_DEFAULT_USER": True})
    with app.app_context():
        app.init_db()
        inserted, skipped = seed(app.get_db())
    print(f"Sample data generated: {inserted} inserted, {skipped} already present.")
    print(
        "Login with "
        f"{app.config['DEFAULT_ADMIN_USERNAME']} / {app.config['DEFAULT_ADMIN_PASSWORD']}"
    )


if __name__ == "__main__":
    main()
