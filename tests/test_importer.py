from datetime import timedelta, timezone

import pytest

from finance_ledger.db import connect_db, parse_database_config
from finance_ledger.db_migrations import apply_migrations
from finance_ledger.errors import PersistenceFailure
from finance_ledger.importer import (
    DEFAULT_IMPORT_DEFAULTS,
    ImportDefaults,
    build_preview,
    commit_import,
    infer_kind,
    normalize_column_name,
    normalize_row,
    parse_amount,
    scan_import,
)

COMMA_DECIMALS = DEFAULT_IMPORT_DEFAULTS._replace(decimal_separator=",")


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "import.sqlite"))
    apply_migrations(config)
    conn = connect_db(config)
    conn.execute(
        "INSERT INTO users (username, email, password_hash) VALUES ('importer', 'importer@example.com', 'x')"
    )
    conn.commit()
    yield conn
    conn.close()


def test_parse_amount_default_separator_keeps_ambiguity():
    assert parse_amount("Rp 150.000") == 150.0
    assert parse_amount("150000") == 150000.0
    assert parse_amount("-42.5") == -42.5
    assert parse_amount("") == 0.0
    assert parse_amount(None) == 0.0
    assert parse_amount("n/a") == 0.0


def test_parse_amount_comma_separator():
    assert parse_amount("Rp 150.000", ",") == 150000.0
    assert parse_amount("150000", ",") == 150000.0
    assert parse_amount("1.234,50", ",") == 1234.5


def test_normalize_column_name():
    assert normalize_column_name("  Amount RP ") == "amount_rp"
    assert normalize_column_name("No   Referensi") == "no_referensi"
    assert normalize_column_name(None) == ""


@pytest.mark.parametrize(
    "row, amount, expected",
    [
        ({"kind": "Credit"}, 100.0, ("credit", 100.0)),
        ({"jenis": "MASUK"}, -100.0, ("credit", 100.0)),
        ({"type": "withdrawal"}, 100.0, ("debit", 100.0)),
        ({}, -75.0, ("debit", 75.0)),
        ({"debit": "30"}, 0.0, ("debit", 30.0)),
        ({"credit": "45"}, 0.0, ("credit", 45.0)),
        ({"debit": "0", "credit": "45"}, 0.0, ("credit", 45.0)),
        ({}, 10.0, ("debit", 10.0)),
    ],
)
def test_infer_kind_priority(row, amount, expected):
    assert infer_kind(row, amount) == expected


def test_normalize_row_maps_aliases_and_defaults():
    row = {
        "tanggal": "2026-01-15",
        "nominal": "25000",
        "keterangan": "Kopi Kenangan",
        "kategori": "food",
        "no_referensi": "TRX-1",
    }

    result = normalize_row(row, 1)

    assert result.ok
    record = result.record
    assert record["row_number"] == 1
    assert record["kind"] == "debit"
    assert record["datetime_iso"] == "2026-01-15T00:00:00.000Z"
    assert record["amount_rp"] == 25000
    assert record["total_rp"] == 25000
    assert record["fee_rp"] == 0
    assert record["merchant"] == "Kopi Kenangan"
    assert record["summary"] == "Kopi Kenangan"
    assert record["category_code"] == "food"
    assert record["reference_id"] == "TRX-1"
    assert record["channel"] == "csv_import"
    assert record["status"] == "completed"
    assert record["currency"] == "IDR"
    assert record["raw"] == row


def test_normalize_row_uses_configured_defaults():
    defaults = ImportDefaults.from_config(
        {"IMPORT_DEFAULT_CHANNEL": "bca", "IMPORT_DEFAULT_CATEGORY": "shopping", "IMPORT_DEFAULT_CURRENCY": "USD"}
    )

    record = normalize_row({"date": "2026-01-15", "amount": "10"}, 1, defaults).record

    assert record["channel"] == "bca"
    assert record["category_code"] == "shopping"
    assert record["currency"] == "USD"


def test_normalize_row_rounds_half_up_and_takes_absolute_fee():
    record = normalize_row({"date": "2026-01-15", "amount": "10.5", "fee": "-2.5"}, 1).record

    assert record["amount_rp"] == 11
    assert record["total_rp"] == 11
    assert record["fee_rp"] == 3


def test_normalize_row_rejects_amounts_beyond_bigint():
    result = normalize_row({"date": "2026-01-15", "amount": "99999999999999999999"}, 3)
    fee_result = normalize_row({"date": "2026-01-15", "amount": "1", "fee": "99999999999999999999"}, 4)

    assert not result.ok
    assert result.code == "InvalidFormat"
    assert result.row_number == 3
    assert not fee_result.ok
    assert fee_result.code == "InvalidFormat"


def test_import_defaults_reject_unknown_decimal_separator():
    with pytest.raises(ValueError):
        ImportDefaults.from_config({"IMPORT_DECIMAL_SEPARATOR": ";"})

    assert ImportDefaults.from_config({"IMPORT_DECIMAL_SEPARATOR": ","}).decimal_separator == ","


def test_normalize_row_missing_date():
    result = normalize_row({"amount": "10"}, 4)

    assert not result.ok
    assert result.to_dict() == {"row": 4, "error": "Missing date/datetime field", "code": "MissingField"}


def test_normalize_row_unparseable_date():
    result = normalize_row({"date": "sometime soon", "amount": "10"}, 2)

    assert not result.ok
    assert result.code == "InvalidFormat"
    assert result.row_number == 2


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2026-01-15T10:30:00Z", "2026-01-15T10:30:00.000Z"),
        ("2026-01-15T10:30:00+07:00", "2026-01-15T03:30:00.000Z"),
        ("01/15/2026", "2026-01-15T00:00:00.000Z"),
        ("25/12/2025", "2025-12-25T00:00:00.000Z"),
        ("31-01-26", "2026-01-31T00:00:00.000Z"),
        ("15 Jan 2026", "2026-01-15T00:00:00.000Z"),
    ],
)
def test_normalize_row_date_formats(value, expected):
    record = normalize_row({"date": value, "amount": "1"}, 1).record

    assert record["datetime_iso"] == expected


def test_naive_dates_are_localized_to_configured_timezone():
    defaults = DEFAULT_IMPORT_DEFAULTS._replace(timezone=timezone(timedelta(hours=7)))

    record = normalize_row({"datetime": "2026-01-15 08:00:00", "amount": "1"}, 1, defaults).record

    assert record["datetime_iso"] == "2026-01-15T01:00:00.000Z"


def test_kind_inference_is_idempotent_on_canonical_records():
    first = normalize_row({"date": "2026-01-15", "amount": "-5000"}, 1).record
    canonical = {
        "datetime_iso": first["datetime_iso"],
        "kind": first["kind"],
        "amount_rp": str(first["amount_rp"]),
    }

    second = normalize_row(canonical, 1).record

    assert (second["kind"], second["amount_rp"]) == (first["kind"], first["amount_rp"])
    assert second["datetime_iso"] == first["datetime_iso"]


def test_comma_convention_normalizes_both_spellings():
    dotted = normalize_row({"date": "2026-01-15", "amount": "Rp 150.000"}, 1, COMMA_DECIMALS).record
    plain = normalize_row({"date": "2026-01-15", "amount": "150000"}, 2, COMMA_DECIMALS).record

    assert dotted["amount_rp"] == plain["amount_rp"] == 150000


def test_scan_import_normalizes_headers_and_skips_blank_rows():
    content = (
        "Date, Amount ,Description\n"
        "2026-01-15,1000,Coffee\n"
        ",,\n"
        "\n"
        "not-a-date,500,Tea\n"
        '2026-01-16,"2,000",Lunch\n'
    ).encode("utf-8")

    scan = scan_import(content)

    assert scan.columns == ["date", "amount", "description"]
    assert scan.row_count == 3
    assert [result.ok for result in scan.results] == [True, False, True]
    assert scan.results[1].row_number == 2
    assert scan.results[2].row_number == 3
    assert scan.results[2].record["amount_rp"] == 2000


def test_scan_import_duplicate_header_prefers_first_non_empty():
    content = b"date,amount,amount\n2026-01-15,,700\n"

    scan = scan_import(content)

    assert scan.results[0].record["amount_rp"] == 700


def test_scan_import_decodes_cp1252_and_bom():
    content = "date,amount,merchant\n2026-01-15,10,Café\n".encode("cp1252")
    bom_content = "\ufeffdate,amount,merchant\n2026-01-15,10,Café\n".encode("utf-8")

    assert scan_import(content).results[0].record["merchant"] == "Café"
    assert scan_import(bom_content).columns == ["date", "amount", "merchant"]


def test_build_preview_caps_samples():
    lines = ["date,amount"]
    lines += [f"2026-01-{day:02d},{day}" for day in range(1, 16)]
    lines += ["bad-date,1"] * 12
    scan = scan_import("\n".join(lines).encode("utf-8"))

    preview = build_preview(scan)

    assert preview["totalRows"] == 15
    assert len(preview["preview"]) == 10
    assert "raw" not in preview["preview"][0]
    assert preview["totalErrors"] == 12
    assert len(preview["errors"]) == 10
    assert preview["columns"] == ["date", "amount"]


def test_commit_import_skips_duplicates(db):
    content = (
        "date,amount,reference\n"
        "2026-01-15,100,A\n"
        "2026-01-16,200,B\n"
        "2026-01-17,300,A\n"
        "2026-01-18,400,\n"
    ).encode("utf-8")

    result = commit_import(db, 1, "dupes.csv", scan_import(content))

    assert result["inserted"] == 3
    assert result["skipped"] == 1
    assert result["errors"] == 0
    batch = db.execute("SELECT status, row_count FROM import_batches WHERE id = ?", (result["batchId"],)).fetchone()
    assert batch["status"] == "completed"
    assert batch["row_count"] == 3
    linked = db.execute(
        "SELECT COUNT(*) AS count FROM transactions WHERE import_batch_id = ?", (result["batchId"],)
    ).fetchone()
    assert linked["count"] == 3


def test_commit_import_reports_row_insert_failures(db):
    content = b"date,amount,category\n2026-01-15,100,food\n2026-01-16,200,no-such-category\n"

    result = commit_import(db, 1, "fk.csv", scan_import(content))

    assert result["inserted"] == 1
    assert result["errors"] == 1
    assert result["errorDetails"][0]["row"] == 2
    assert result["errorDetails"][0]["code"] == "InsertFailed"


def test_commit_import_rolls_back_when_batch_cannot_be_written(db):
    db.execute("DROP TABLE import_batches")
    db.commit()

    with pytest.raises(PersistenceFailure):
        commit_import(db, 1, "broken.csv", scan_import(b"date,amount\n2026-01-15,100\n"))

    count = db.execute("SELECT COUNT(*) AS count FROM transactions").fetchone()["count"]
    assert count == 0


def test_commit_import_rolls_back_inserted_rows_when_finalize_fails(db):
    db.execute(
        """
        CREATE TRIGGER fail_batch_finalize BEFORE UPDATE ON import_batches
        BEGIN
            SELECT RAISE(ABORT, 'finalize failed');
        END
        """
    )
    db.commit()
    content = b"date,amount\n2026-01-15,100\n2026-01-16,200\n"

    with pytest.raises(PersistenceFailure):
        commit_import(db, 1, "finalize.csv", scan_import(content))

    assert db.execute("SELECT COUNT(*) AS count FROM transactions").fetchone()["count"] == 0
    assert db.execute("SELECT COUNT(*) AS count FROM import_batches").fetchone()["count"] == 0
