from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from lending_desk.borrow import BorrowRecord, LendingSettings, compute_fine, to_date
from lending_desk.errors import ValidationError


def test_fine_is_zero_on_due_date():
    assert compute_fine("2024-01-01", "2024-01-01", 1) == 0

def test_fine_counts_whole_days_late():
    assert compute_fine("2024-01-01", "2024-01-04", 2) == Decimal("6")

def test_fine_is_zero_when_returned_early():
    assert compute_fine("2024-01-10", "2024-01-05", 1) == 0

def test_fine_keeps_decimal_rates_exact():
    assert compute_fine(date(2024, 2, 27), date(2024, 3, 1), "0.10") == Decimal("0.30")

def test_fine_ignores_time_of_day():
    late_evening = datetime(2024, 1, 2, 23, 59, tzinfo=timezone.utc)
    assert compute_fine("2024-01-01", late_evening, 1) == 1

def test_to_date_truncates_to_utc_calendar_date():
    from datetime import timedelta
    plus_two = timezone(timedelta(hours=2))
    # 01:00 at UTC+2 is still the previous day in UTC
    assert to_date(datetime(2024, 1, 2, 1, 0, tzinfo=plus_two)) == date(2024, 1, 1)
    assert to_date("2024-03-05T10:00:00") == date(2024, 3, 5)

def test_to_date_rejects_garbage():
    with pytest.raises(ValidationError):
        to_date("not-a-date")
    with pytest.raises(ValidationError):
        to_date("2024-01-01garbage")

def test_to_date_applies_utc_offset_in_strings():
    # Same moment as a datetime and as an ISO string
    assert to_date("2024-01-02T01:00:00+02:00") == date(2024, 1, 1)
    assert to_date("2024-01-01T23:30:00Z") == date(2024, 1, 1)
    assert to_date("2024-01-02") == date(2024, 1, 2)

def test_fine_uses_utc_day_for_offset_strings():
    from datetime import timedelta
    moment = datetime(2024, 1, 2, 1, 0, tzinfo=timezone(timedelta(hours=2)))
    assert compute_fine("2024-01-01", moment, 1) == 0
    assert compute_fine("2024-01-01", moment.isoformat(), 1) == 0

def test_open_record_sets_due_date_from_settings():
    record = BorrowRecord.open("b1", "u1", date(2024, 1, 30), LendingSettings(borrowing_period_days=3))
    assert record.borrow_date == date(2024, 1, 30)
    assert record.due_date == date(2024, 2, 2)
    assert record.is_active
    assert record.fine is None

def test_overdue_only_after_due_date():
    record = BorrowRecord("b1", "u1", date(2024, 1, 1), date(2024, 1, 15))
    assert not record.is_overdue(date(2024, 1, 15))
    assert record.is_overdue(date(2024, 1, 16))
    assert record.days_overdue(date(2024, 1, 20)) == 5
    record.return_date = date(2024, 1, 20)
    assert not record.is_overdue(date(2024, 1, 30))

def test_record_dict_roundtrip_keeps_fine():
    record = BorrowRecord("b1", "u1", date(2024, 1, 1), date(2024, 1, 15),
                          return_date=date(2024, 1, 18), fine=Decimal("3"))
    data = record.to_dict()
    assert data["bookId"] == "b1"
    assert data["returnDate"] == "2024-01-18"
    restored = BorrowRecord.from_dict(data)
    assert restored.fine == Decimal("3")
    assert not restored.is_active

@pytest.mark.parametrize("kwargs", [
    {"low_stock_threshold": -1},
    {"borrowing_period_days": 0},
    {"fine_per_day": -0.5},
    {"fine_per_day": "abc"},
    {"low_stock_threshold": "abc"},
    {"borrowing_period_days": "two weeks"},
    {"borrowing_period_days": 2.9},
    {"low_stock_threshold": None},
])
def test_settings_reject_out_of_range_values(kwargs):
    with pytest.raises(ValidationError):
        LendingSettings(**kwargs)

def test_settings_defaults():
    s = LendingSettings()
    assert (s.low_stock_threshold, s.borrowing_period_days, s.fine_per_day) == (3, 14, Decimal("1"))
