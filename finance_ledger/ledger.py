"""Transaction persistence and the value helpers shared by the API and the importer.

Instants are stored as canonical UTC text (``2026-01-15T00:00:00.000Z``) so
that string comparison and ``substr`` bucketing behave the same on SQLite and
Postgres. Money is always an integer number of minor units.
"""

import json
import math
import re
from datetime import datetime, timezone

from .db import INTEGRITY_ERRORS, is_unique_violation, row_to_dict
from .errors import DuplicateConflict, InvalidFormat, MissingField

KINDS = ("debit", "credit")

TRANSACTION_FIELDS = [
    "kind",
    "channel",
    "document_type",
    "event_type",
    "status",
    "merchant",
    "account_masked",
    "reference_id",
    "datetime_iso",
    "currency",
    "amount_rp",
    "fee_rp",
    "total_rp",
    "risk_flags",
    "summary",
    "category_code",
    "notes",
]
REQUIRED_TRANSACTION_FIELDS = ["kind", "channel", "status", "datetime_iso"]
MONEY_FIELDS = {"amount_rp", "fee_rp", "total_rp"}
# Money columns are BIGINT on both backends.
MAX_MINOR_UNITS = 2**63 - 1
JSON_COLUMNS = {"risk_flags", "raw_payload"}

GENERIC_DATE_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
]
DATE_PART_SPLIT_RE = re.compile(r"[/-]")


def utc_now():
    return datetime.now(timezone.utc)


def format_instant(value):
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_generic_date(text):
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        pass
    for fmt in GENERIC_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _parse_day_first_date(text):
    parts = DATE_PART_SPLIT_RE.split(text)
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
        if year < 100:
            year += 2000
        return datetime(year, month, day)
    except ValueError:
        return None


def parse_instant(value, tz=timezone.utc):
    """Parse free-text date/datetime into an aware UTC datetime.

    Generic formats are tried first; a value that still does not parse is
    re-read as day/month/year. Naive results are localized to ``tz``.
    Raises InvalidFormat when nothing matches.
    """
    text = (value or "").strip()
    if not text:
        raise MissingField("Missing date/datetime field", field="datetime_iso")

    parsed = _parse_generic_date(text) or _parse_day_first_date(text)
    if parsed is None:
        raise InvalidFormat(f"Invalid date format: {text}", field="datetime_iso")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError) as exc:
        raise InvalidFormat(f"Invalid date format: {text}", field="datetime_iso") from exc


def to_minor_units(value):
    # Half-up, not round()'s half-to-even.
    return int(math.floor(value + 0.5))


def check_minor_units(amount, field):
    if amount > MAX_MINOR_UNITS:
        raise InvalidFormat(f"{field} is too large", field=field)
    return amount


def coerce_minor_units(value, field):
    if isinstance(value, bool):
        raise InvalidFormat(f"{field} must be an integer amount", field=field)
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidFormat(f"{field} must be an integer amount", field=field)
        amount = to_minor_units(value)
    elif isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        amount = int(value)
    else:
        raise InvalidFormat(f"{field} must be an integer amount", field=field)
    if amount < 0:
        raise InvalidFormat(f"{field} must not be negative", field=field)
    return check_minor_units(amount, field)


def _clean_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_transaction_payload(payload, partial=False, tz=timezone.utc, default_category="other"):
    """Return the writable columns from a JSON body.

    ``partial`` validates only the fields that are present (updates);
    otherwise required fields are enforced and defaults applied.
    """
    if not isinstance(payload, dict):
        raise InvalidFormat("Request body must be a JSON object")

    if not partial:
        missing = [field for field in REQUIRED_TRANSACTION_FIELDS if not str(payload.get(field) or "").strip()]
        if missing:
            raise MissingField(f"Missing required fields: {', '.join(missing)}", field=missing[0])

    values = {}
    for field in TRANSACTION_FIELDS:
        if field not in payload or payload[field] is None:
            continue
        raw = payload[field]
        if field == "kind":
            kind = str(raw).strip().lower()
            if kind not in KINDS:
                raise InvalidFormat("kind must be 'debit' or 'credit'", field="kind")
            values["kind"] = kind
        elif field == "datetime_iso":
            values["datetime_iso"] = format_instant(parse_instant(str(raw), tz))
        elif field in MONEY_FIELDS:
            values[field] = coerce_minor_units(raw, field)
        elif field == "risk_flags":
            if not isinstance(raw, list):
                raise InvalidFormat("risk_flags must be a list", field="risk_flags")
            values["risk_flags"] = raw
        else:
            cleaned = _clean_text(raw)
            if cleaned is None and partial:
                continue
            values[field] = cleaned

    if not partial:
        values.setdefault("currency", "IDR")
        values.setdefault("amount_rp", 0)
        values.setdefault("fee_rp", 0)
        values.setdefault("risk_flags", [])
        if not values.get("category_code"):
            values["category_code"] = default_category
        if "total_rp" not in values:
            values["total_rp"] = check_minor_units(values["amount_rp"] + values["fee_rp"], "total_rp")
    return values


def _db_value(column, value):
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value)
    return value


def insert_transaction(db, values, raw_payload=None, import_batch_id=None):
    """Insert one transaction and return its id.

    A unique-index hit (duplicate ``reference_id``) is raised as
    DuplicateConflict; other integrity failures propagate unchanged.
    """
    now = format_instant(utc_now())
    columns = [field for field in TRANSACTION_FIELDS if field in values]
    params = [_db_value(column, values[column]) for column in columns]
    columns += ["raw_payload", "import_batch_id", "created_at", "updated_at"]
    params += [_db_value("raw_payload", raw_payload), import_batch_id, now, now]
    placeholders = ", ".join(["?"] * len(columns))
    try:
        db.execute(
            f"INSERT INTO transactions ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(params),
        )
    except INTEGRITY_ERRORS as exc:
        if is_unique_violation(exc):
            raise DuplicateConflict(
                f"Transaction with reference_id {values.get('reference_id')!r} already exists",
                field="reference_id",
            ) from exc
        raise
    return db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]


def update_transaction(db, transaction_id, values):
    if not values:
        return 0
    set_parts = [f"{column} = ?" for column in values]
    params = [_db_value(column, value) for column, value in values.items()]
    set_parts.append("updated_at = ?")
    params.append(format_instant(utc_now()))
    params.append(transaction_id)
    try:
        result = db.execute(f"UPDATE transactions SET {', '.join(set_parts)} WHERE id = ?", tuple(params))
    except INTEGRITY_ERRORS as exc:
        if is_unique_violation(exc):
            raise DuplicateConflict("Transaction with this reference_id already exists", field="reference_id") from exc
        raise
    return result.rowcount


def serialize_row(row):
    data = row_to_dict(row)
    if data is None:
        return None
    for column in JSON_COLUMNS & set(data):
        if isinstance(data[column], str):
            try:
                data[column] = json.loads(data[column])
            except ValueError:
                pass
    return data
