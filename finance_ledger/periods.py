import calendar
from collections import namedtuple
from datetime import datetime, timedelta, timezone

from .errors import InvalidFormat
from .ledger import format_instant

BUDGET_CYCLE_SETTING_KEY = "budget_cycle_start_day"
DEFAULT_CYCLE_START_DAY = 25
# Every month has a 28th, so the window never depends on month length.
MIN_CYCLE_START_DAY = 1
MAX_CYCLE_START_DAY = 28


class BudgetPeriod(namedtuple("BudgetPeriod", ["start_day", "start", "end"])):
    __slots__ = ()

    def to_dict(self):
        return {
            "startDay": self.start_day,
            "periodStart": format_instant(self.start),
            "periodEnd": format_instant(self.end),
        }


def is_valid_cycle_start_day(value):
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_CYCLE_START_DAY <= value <= MAX_CYCLE_START_DAY
    )


def validate_cycle_setting(value):
    """Check a ``budget_cycle_start_day`` setting value, shaped ``{"day": n}``."""
    if not isinstance(value, dict) or not is_valid_cycle_start_day(value.get("day")):
        raise InvalidFormat(
            f"{BUDGET_CYCLE_SETTING_KEY} must look like {{\"day\": {MIN_CYCLE_START_DAY}-{MAX_CYCLE_START_DAY}}}",
            field="value",
        )
    return {"day": value["day"]}


def resolve_cycle_start_day(setting_value, default=DEFAULT_CYCLE_START_DAY):
    if isinstance(setting_value, dict) and is_valid_cycle_start_day(setting_value.get("day")):
        return setting_value["day"]
    return default


def shift_months(value, months):
    """Move ``value`` by whole calendar months, clamping the day to the target month."""
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def budget_period(start_day=DEFAULT_CYCLE_START_DAY, reference=None, tz=timezone.utc):
    if not is_valid_cycle_start_day(start_day):
        raise InvalidFormat(
            f"Budget cycle start day must be between {MIN_CYCLE_START_DAY} and {MAX_CYCLE_START_DAY}",
            field="day",
        )
    if reference is None:
        reference = datetime.now(tz)

    anchor = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if reference.day < start_day:
        anchor = shift_months(anchor, -1)

    period_start = anchor.replace(day=start_day)
    next_start = shift_months(period_start, 1)
    period_end = (next_start - timedelta(days=1)).replace(hour=23, minute=59, second=59, microsecond=999999)
    return BudgetPeriod(start_day, period_start, period_end)
