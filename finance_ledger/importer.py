"""CSV import: row normalization, file scanning, preview and commit.

``scan_import`` turns uploaded bytes into one ``ImportScan`` whose results are
tagged ``ParsedRow``/``RowError`` values; preview and commit both consume it.
"""

import csv
import io
import logging
import re
from collections import namedtuple
from datetime import timezone

from .db import DB_ERRORS
from .errors import DuplicateConflict, InvalidFormat, LedgerError, MissingField, PersistenceFailure
from .ledger import check_minor_units, format_instant, insert_transaction, parse_instant, to_minor_units, utc_now

logger = logging.getLogger(__name__)

PREVIEW_ROW_LIMIT = 10
ERROR_SAMPLE_LIMIT = 10
INSERT_FAILED = "InsertFailed"
DECIMAL_SEPARATORS = (".", ",")

DATE_COLUMNS = ("datetime_iso", "datetime", "date", "tanggal", "time")
AMOUNT_COLUMNS = ("amount_rp", "amount", "nominal", "jumlah", "total")
KIND_COLUMNS = ("kind", "type", "jenis")
CREDIT_KIND_VALUES = {"credit", "masuk"}

# Ordered candidates per field; the first non-empty column wins.
FIELD_ALIASES = {
    "channel": ("channel", "bank"),
    "status": ("status",),
    "merchant": ("merchant", "description", "keterangan", "nama"),
    "currency": ("currency", "mata_uang"),
    "fee": ("fee_rp", "fee", "biaya"),
    "summary": ("summary", "description", "keterangan"),
    "category_code": ("category_code", "category", "kategori"),
    "reference_id": ("reference_id", "reference", "ref", "no_referensi"),
    "notes": ("notes", "catatan"),
}

NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")
LEADING_NUMBER_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")
HEADER_WHITESPACE_RE = re.compile(r"\s+")


class ImportDefaults(
    namedtuple(
        "ImportDefaults",
        ["channel", "status", "currency", "category", "decimal_separator", "timezone"],
    )
):
    __slots__ = ()

    @classmethod
    def from_config(cls, config, tz=timezone.utc):
        decimal_separator = config.get("IMPORT_DECIMAL_SEPARATOR", ".")
        if decimal_separator not in DECIMAL_SEPARATORS:
            raise ValueError(f"IMPORT_DECIMAL_SEPARATOR must be one of {DECIMAL_SEPARATORS}, got {decimal_separator!r}")
        return cls(
            channel=config.get("IMPORT_DEFAULT_CHANNEL", "csv_import"),
            status=config.get("IMPORT_DEFAULT_STATUS", "completed"),
            currency=config.get("IMPORT_DEFAULT_CURRENCY", "IDR"),
            category=config.get("IMPORT_DEFAULT_CATEGORY", "other"),
            decimal_separator=decimal_separator,
            timezone=tz,
        )


DEFAULT_IMPORT_DEFAULTS = ImportDefaults("csv_import", "completed", "IDR", "other", ".", timezone.utc)


class ParsedRow(namedtuple("ParsedRow", ["row_number", "record"])):
    __slots__ = ()
    ok = True


class RowError(namedtuple("RowError", ["row_number", "code", "message"])):
    __slots__ = ()
    ok = False

    def to_dict(self):
        return {"row": self.row_number, "error": self.message, "code": self.code}


ImportScan = namedtuple("ImportScan", ["columns", "results", "row_count"])


def normalize_column_name(value):
    return HEADER_WHITESPACE_RE.sub("_", (value or "").strip().lower())


def first_value(row, columns):
    for column in columns:
        value = row.get(column)
        if value:
            return value
    return None


def parse_amount(value, decimal_separator="."):
    """Leading number of ``value`` once everything but digits, '.' and '-' is dropped.

    With ``decimal_separator=","`` dots are thousands separators and the comma
    becomes the decimal point. Returns 0.0 when nothing numeric remains.
    """
    text = str(value or "")
    if decimal_separator == ",":
        text = text.replace(".", "").replace(",", ".")
    match = LEADING_NUMBER_RE.match(NON_NUMERIC_RE.sub("", text))
    if not match:
        return 0.0
    return float(match.group(0))


def infer_kind(row, amount, decimal_separator="."):
    explicit = first_value(row, KIND_COLUMNS)
    if explicit:
        kind = "credit" if explicit.strip().lower() in CREDIT_KIND_VALUES else "debit"
        return kind, abs(amount)

    if amount < 0:
        return "debit", abs(amount)

    debit = parse_amount(row.get("debit"), decimal_separator)
    if debit > 0:
        return "debit", debit

    credit = parse_amount(row.get("credit"), decimal_separator)
    if credit > 0:
        return "credit", credit

    return "debit", amount


def _normalize(row, row_number, defaults):
    date_value = first_value(row, DATE_COLUMNS)
    if not date_value:
        raise MissingField("Missing date/datetime field", field="datetime_iso")
    instant = parse_instant(date_value, defaults.timezone)

    amount = parse_amount(first_value(row, AMOUNT_COLUMNS), defaults.decimal_separator)
    kind, amount = infer_kind(row, amount, defaults.decimal_separator)
    amount_rp = check_minor_units(to_minor_units(amount), "amount_rp")

    def field(name, default=None):
        return first_value(row, FIELD_ALIASES[name]) or default

    fee = parse_amount(field("fee"), defaults.decimal_separator)
    return {
        "row_number": row_number,
        "kind": kind,
        "channel": field("channel", defaults.channel),
        "status": field("status", defaults.status),
        "merchant": field("merchant"),
        "reference_id": field("reference_id"),
        "datetime_iso": format_instant(instant),
        "currency": field("currency", defaults.currency),
        "amount_rp": amount_rp,
        "fee_rp": check_minor_units(to_minor_units(abs(fee)), "fee_rp"),
        "total_rp": amount_rp,
        "summary": field("summary"),
        "category_code": field("category_code", defaults.category),
        "notes": field("notes"),
        "raw": dict(row),
    }


def normalize_row(row, row_number, defaults=DEFAULT_IMPORT_DEFAULTS):
    """Map one CSV row to a ParsedRow or a RowError. Never raises."""
    try:
        return ParsedRow(row_number, _normalize(row, row_number, defaults))
    except LedgerError as exc:
        return RowError(row_number, exc.code, exc.message)
    except (ValueError, TypeError, OverflowError) as exc:
        return RowError(row_number, InvalidFormat.code, f"Cannot parse row: {exc}")


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def iter_csv_rows(reader, columns):
    """Yield ``(row_number, row)`` keyed by normalized column names, values trimmed.

    Blank lines do not consume a row number. When a header repeats, the first
    non-empty value wins.
    """
    row_number = 0
    for cells in reader:
        if not any(cell.strip() for cell in cells):
            continue
        row_number += 1
        row = {}
        for index, column in enumerate(columns):
            if not column:
                continue
            value = cells[index].strip() if index < len(cells) else ""
            if not row.get(column):
                row[column] = value
        yield row_number, row


def scan_import(file_bytes, defaults=DEFAULT_IMPORT_DEFAULTS):
    text = decode_csv_bytes(file_bytes)
    if text is None:
        raise InvalidFormat("Unable to decode CSV file")

    reader = csv.reader(io.StringIO(text, newline=""))
    results = []
    row_count = 0
    try:
        columns = [normalize_column_name(cell) for cell in next(reader, [])]
        for row_number, row in iter_csv_rows(reader, columns):
            row_count = row_number
            results.append(normalize_row(row, row_number, defaults))
    except csv.Error as exc:
        raise InvalidFormat(f"Malformed CSV file: {exc}") from exc

    return ImportScan([column for column in columns if column], results, row_count)


def partition_results(results):
    parsed = [result for result in results if result.ok]
    errors = [result for result in results if not result.ok]
    return parsed, errors


def public_record(record):
    return {key: value for key, value in record.items() if key != "raw"}


def build_preview(scan):
    parsed, errors = partition_results(scan.results)
    return {
        "preview": [public_record(result.record) for result in parsed[:PREVIEW_ROW_LIMIT]],
        "totalRows": len(parsed),
        "errors": [error.to_dict() for error in errors[:ERROR_SAMPLE_LIMIT]],
        "totalErrors": len(errors),
        "columns": scan.columns,
    }


def _record_values(record):
    return {
        key: record[key]
        for key in (
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
            "category_code",
            "notes",
        )
    }


def commit_import(db, user_id, filename, scan):
    """Persist the valid rows of ``scan`` as one import batch.

    Runs as a single unit of work. Each row is inserted under its own
    savepoint: duplicates are skipped, other row failures are reported and
    skipped. Any failure outside a row rolls back the batch and raises
    PersistenceFailure.
    """
    parsed, row_errors = partition_results(scan.results)
    errors = [error.to_dict() for error in row_errors]
    inserted = 0
    skipped = 0

    try:
        db.execute(
            """
            INSERT INTO import_batches (user_id, filename, row_count, status, created_at)
            VALUES (?, ?, ?, 'processing', ?)
            """,
            (user_id, filename, scan.row_count, format_instant(utc_now())),
        )
        batch_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]

        for result in parsed:
            record = result.record
            try:
                with db.savepoint("import_row"):
                    insert_transaction(db, _record_values(record), raw_payload=record["raw"], import_batch_id=batch_id)
            except DuplicateConflict:
                skipped += 1
                continue
            except DB_ERRORS + (OverflowError, ValueError) as exc:
                errors.append({"row": result.row_number, "error": str(exc), "code": INSERT_FAILED})
                continue
            inserted += 1

        db.execute(
            "UPDATE import_batches SET status = 'completed', row_count = ? WHERE id = ?",
            (inserted, batch_id),
        )
        db.commit()
    except DB_ERRORS as exc:
        db.rollback()
        logger.exception("Import of %s failed; batch rolled back", filename)
        raise PersistenceFailure("Failed to import CSV file") from exc

    logger.info(
        "Imported %s: batch=%s inserted=%s skipped=%s errors=%s",
        filename,
        batch_id,
        inserted,
        skipped,
        len(errors),
    )
    return {
        "success": True,
        "batchId": batch_id,
        "inserted": inserted,
        "skipped": skipped,
        "errors": len(errors),
        "errorDetails": errors[:ERROR_SAMPLE_LIMIT],
    }
