"""Time-relative status of schedule items and the human-readable age of a child.

Status is never trusted from storage: every read re-derives it from the due
date, the completion flag and "now", because "now" moves without any write.
"""
from collections.abc import Iterable
from datetime import date, datetime

from services.vaxtrack.errors import ValidationFailure
from services.vaxtrack.schemas import ScheduleStatus

# Days past the due date before a dose counts as overdue.
OVERDUE_AFTER_DAYS = 30


def parse_iso_date(value, *, field: str = "date") -> date:
    """Accept a date or a YYYY-MM-DD string. Datetimes are rejected."""
    if isinstance(value, datetime):
        raise ValidationFailure(f"{field} must be a calendar date, not a datetime")
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationFailure(f"Invalid {field}: {value!r}")
    raise ValidationFailure(f"Invalid {field}: {value!r}")


def derive_status(due_date: date, completed: bool, now: date) -> ScheduleStatus:
    if completed:
        return ScheduleStatus.completed
    days_since_due = (now - due_date).days
    if days_since_due > OVERDUE_AFTER_DAYS:
        return ScheduleStatus.overdue
    if days_since_due >= 0:
        return ScheduleStatus.due
    return ScheduleStatus.upcoming


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def describe_age(birth_date, now) -> str:
    """Age as "<n> months" below one year and "<n> years" from the first birthday on.

    Partial months and years are rounded down by day of month.
    """
    birth = parse_iso_date(birth_date, field="dateOfBirth")
    today = parse_iso_date(now, field="now")
    if today < birth:
        raise ValidationFailure("Date of birth is in the future")

    years = today.year - birth.year
    month_diff = today.month - birth.month
    if month_diff < 0 or (month_diff == 0 and today.day < birth.day):
        years -= 1

    if years == 0:
        months = (today.year - birth.year) * 12 + month_diff
        if today.day < birth.day:
            months -= 1
        return _plural(months, "month")

    return _plural(years, "year")


def summarize_statuses(items: Iterable) -> dict[str, int]:
    counts = {s.value: 0 for s in ScheduleStatus}
    for item in items:
        counts[item.status.value] += 1
    return counts


def next_due(items: Iterable):
    """Earliest pending item by due date; protocol order breaks ties."""
    pending = [i for i in items if not i.completed]
    if not pending:
        return None
    return min(pending, key=lambda i: i.due_date)
