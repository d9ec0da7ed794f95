# advisor/date_utils.py

from __future__ import annotations
from typing import Optional
from datetime import datetime, date, time, timedelta, timezone
import re


_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}

_MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_MONTH_PATTERN = "|".join(sorted(_MONTHS, key=len, reverse=True))
_WEEKDAY_PATTERN = (
    "monday|mon|tuesday|tues|tue|wednesday|wed|thursday|thurs|thur|thu|"
    "friday|fri|saturday|sat|sunday|sun"
)


def normalize_due_date(raw: Optional[str], reference: Optional[date] = None) -> Optional[str]:
    """
    Turn whatever the extractor put in `dueDate` into YYYY-MM-DD.

    Accepts ISO dates and timestamps, relative phrases ("tomorrow",
    "next Friday", "in 2 weeks", "end of month"), month names
    ("Feb 20", "March 3rd, 2026") and numeric MM/DD[/YYYY]. Dates without a
    year that already passed roll into the next year. Anything else,
    including impossible dates, gives None.
    """
    if raw is None:
        return None
    text = str(raw).strip().lower()
    if not text or text in {"null", "none", "n/a", "tbd", "unknown"}:
        return None
    today = reference or datetime.now(timezone.utc).date()

    m = re.match(r"^(\d{4})-(\d{2})-(\d{2})", text)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    if "today" in text or "tonight" in text:
        return today.isoformat()
    if "tomorrow" in text:
        return (today + timedelta(days=1)).isoformat()

    m = re.search(r"\bin\s+(\d{1,3})\s+(day|week|month)s?\b", text)
    if m:
        n = int(m.group(1))
        unit = m.group(2)
        if unit == "day":
            return (today + timedelta(days=n)).isoformat()
        if unit == "week":
            return (today + timedelta(weeks=n)).isoformat()
        return _add_months(today, n).isoformat()

    if "end of month" in text or "end of the month" in text:
        return (_add_months(today.replace(day=1), 1) - timedelta(days=1)).isoformat()

    m = re.search(
        rf"\b({_MONTH_PATTERN})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?(?:,?\s*(\d{{4}}))?\b",
        text,
    )
    if m:
        return _dated(today, _MONTHS[m.group(1)], int(m.group(2)), m.group(3))

    m = re.search(
        rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_PATTERN})\b(?:,?\s*(\d{{4}}))?",
        text,
    )
    if m:
        return _dated(today, _MONTHS[m.group(2)], int(m.group(1)), m.group(3))

    m = re.search(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b", text)
    if m:
        year = m.group(3)
        if year is not None and len(year) == 2:
            year = str(2000 + int(year))
        return _dated(today, int(m.group(1)), int(m.group(2)), year)

    m = re.search(rf"\b({_WEEKDAY_PATTERN})\b", text)
    if m:
        return _next_weekday(today, _WEEKDAYS[m.group(1)[:3]]).isoformat()

    return None


def due_date_to_eta(due_date: Optional[str]) -> Optional[str]:
    """ISO timestamp (UTC midnight) for a YYYY-MM-DD due date."""
    if not due_date:
        return None
    try:
        day = date.fromisoformat(due_date[:10])
    except ValueError:
        return None
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc).isoformat()


def _dated(today: date, month: int, day: int, year: Optional[str]) -> Optional[str]:
    if year is not None:
        return _safe_date(int(year), month, day)
    candidate = _safe_date(today.year, month, day)
    if candidate is None:
        return None
    if date.fromisoformat(candidate) < today:
        return _safe_date(today.year + 1, month, day)
    return candidate


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _next_weekday(d: date, target_weekday: int) -> date:
    days_ahead = (target_weekday - d.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return d + timedelta(days=days_ahead)


def _add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    for day in (d.day, 30, 29, 28):
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return date(year, month, 28)
