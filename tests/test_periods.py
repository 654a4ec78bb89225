from datetime import datetime, timezone

import pytest

from finance_ledger.errors import InvalidFormat
from finance_ledger.periods import (
    budget_period,
    resolve_cycle_start_day,
    shift_months,
    validate_cycle_setting,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_reference_before_start_day_uses_previous_month():
    period = budget_period(25, utc(2026, 3, 10, 14, 30))

    assert period.start == utc(2026, 2, 25)
    assert period.end == utc(2026, 3, 24, 23, 59, 59, 999999)


def test_reference_on_start_day_opens_new_period():
    period = budget_period(25, utc(2026, 3, 25))

    assert period.start == utc(2026, 3, 25)
    assert period.end == utc(2026, 4, 24, 23, 59, 59, 999999)


def test_period_crosses_year_boundary():
    period = budget_period(25, utc(2026, 1, 5))

    assert period.start == utc(2025, 12, 25)
    assert period.end == utc(2026, 1, 24, 23, 59, 59, 999999)


def test_start_day_one_spans_calendar_month():
    period = budget_period(1, utc(2024, 2, 29, 12))

    assert period.start == utc(2024, 2, 1)
    assert period.end == utc(2024, 2, 29, 23, 59, 59, 999999)


def test_period_serializes_to_canonical_instants():
    period = budget_period(25, utc(2026, 3, 10))

    assert period.to_dict() == {
        "startDay": 25,
        "periodStart": "2026-02-25T00:00:00.000Z",
        "periodEnd": "2026-03-24T23:59:59.999Z",
    }


@pytest.mark.parametrize("start_day", [0, 29, 31, -1, True, "25"])
def test_out_of_range_start_day_is_rejected(start_day):
    with pytest.raises(InvalidFormat):
        budget_period(start_day, utc(2026, 3, 10))


def test_resolve_cycle_start_day_falls_back_on_bad_values():
    assert resolve_cycle_start_day({"day": 10}) == 10
    assert resolve_cycle_start_day({"day": 31}) == 25
    assert resolve_cycle_start_day({"day": "10"}) == 25
    assert resolve_cycle_start_day(None, default=1) == 1


def test_validate_cycle_setting():
    assert validate_cycle_setting({"day": 28}) == {"day": 28}
    with pytest.raises(InvalidFormat):
        validate_cycle_setting({"day": 29})
    with pytest.raises(InvalidFormat):
        validate_cycle_setting(15)


def test_shift_months_clamps_day():
    assert shift_months(utc(2026, 3, 31), -1) == utc(2026, 2, 28)
    assert shift_months(utc(2026, 8, 31), -6) == utc(2026, 2, 28)
    assert shift_months(utc(2025, 11, 15), 3) == utc(2026, 2, 15)
