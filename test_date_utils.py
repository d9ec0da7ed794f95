from datetime import date

import pytest

from advisor.date_utils import due_date_to_eta, normalize_due_date

# A Tuesday.
TODAY = date(2026, 3, 10)


@pytest.mark.parametrize("raw, expected", [
    ("2026-04-01", "2026-04-01"),
    ("2026-05-01T10:00:00Z", "2026-05-01"),
    ("today", "2026-03-10"),
    ("Tomorrow", "2026-03-11"),
    ("next Friday", "2026-03-13"),
    ("by Tuesday", "2026-03-17"),
    ("in 3 days", "2026-03-13"),
    ("in 2 weeks", "2026-03-24"),
    ("in 1 month", "2026-04-10"),
    ("end of month", "2026-03-31"),
    ("April 5", "2026-04-05"),
    ("Sept. 14th", "2026-09-14"),
    ("March 3rd, 2026", "2026-03-03"),
    ("20th of May", "2026-05-20"),
    ("4/15", "2026-04-15"),
    ("12/1/27", "2027-12-01"),
])
def test_normalize_due_date(raw, expected):
    assert normalize_due_date(raw, reference=TODAY) == expected


def test_past_dates_without_year_roll_forward():
    assert normalize_due_date("Feb 20", reference=TODAY) == "2027-02-20"
    assert normalize_due_date("1/5", reference=TODAY) == "2027-01-05"


@pytest.mark.parametrize("raw", [None, "", "TBD", "null", "whenever works", "2026-02-30", "13/45", "Feb 31"])
def test_unparseable_dates_are_none(raw):
    assert normalize_due_date(raw, reference=TODAY) is None


def test_month_arithmetic_clamps_day():
    assert normalize_due_date("in 1 month", reference=date(2026, 1, 31)) == "2026-02-28"


def test_due_date_to_eta():
    assert due_date_to_eta("2026-03-10") == "2026-03-10T00:00:00+00:00"
    assert due_date_to_eta(None) is None
    assert due_date_to_eta("not a date") is None
