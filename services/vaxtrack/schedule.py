import calendar
from datetime import date

from services.vaxtrack.errors import ValidationFailure
from services.vaxtrack.protocol import DoseDefinition, all_doses
from services.vaxtrack.schemas import ScheduleItemDraft
from services.vaxtrack.status import derive_status, parse_iso_date


def add_calendar_months(d: date, months: int) -> date:
    """Add whole calendar months, clamping to the last day of the target month.

    2023-01-31 + 1 month is 2023-02-28, never a day in March.
    """
    if months < 0:
        raise ValidationFailure(f"Month offset must be >= 0, got {months}")
    year, month0 = divmod(d.month - 1 + months, 12)
    year += d.year
    month = month0 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def generate_schedule(birth_date, now, doses: tuple[DoseDefinition, ...] | None = None) -> list[ScheduleItemDraft]:
    """One draft per protocol dose, in protocol order (not due-date order)."""
    birth = parse_iso_date(birth_date, field="dateOfBirth")
    today = parse_iso_date(now, field="now")

    drafts = []
    for dose in doses if doses is not None else all_doses():
        due = add_calendar_months(birth, dose.age_months)
        drafts.append(
            ScheduleItemDraft(
                vaccine_name=dose.name,
                vaccine_description=dose.description,
                age_months=dose.age_months,
                age_text=dose.age_text,
                due_date=due,
                completed=False,
                status=derive_status(due, False, today),
            )
        )
    return drafts
