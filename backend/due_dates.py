from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from backend.recurring_rules import SUPPORTED_FREQUENCIES, RecurrenceRule

DAILY_DAYS = 1
WEEKLY_DAYS = 7


@dataclass(frozen=True)
class DueDecision:
    due: bool
    occurrence_date: date | None = None


NOT_DUE = DueDecision(due=False)


def advance(value: date, frequency: str) -> date:
    """Move ``value`` forward by one period of ``frequency``.

    Monthly and yearly steps keep the day of month, clamped to the last day
    of the target month (Jan 31 -> Feb 28/29, Feb 29 -> Feb 28).
    """
    if frequency == "daily":
        return value + timedelta(days=DAILY_DAYS)
    if frequency == "weekly":
        return value + timedelta(days=WEEKLY_DAYS)
    if frequency == "monthly":
        return _add_months(value, 1)
    if frequency == "yearly":
        return _add_months(value, 12)
    raise ValueError(
        f"Unsupported frequency: {frequency}. Use one of: "
        f"{', '.join(sorted(SUPPORTED_FREQUENCIES))}."
    )


def evaluate_due(rule: RecurrenceRule, now: date | datetime) -> DueDecision:
    """Decide whether ``rule`` owes an occurrence on ``now``.

    At most one occurrence is reported no matter how many periods have passed
    since the watermark; missed periods are not backfilled.
    """
    today = _as_date(now)
    if rule.end_date is not None and today > rule.end_date:
        return NOT_DUE

    if rule.last_processed is None:
        if rule.start_date <= today:
            return DueDecision(due=True, occurrence_date=today)
        return NOT_DUE

    next_date = advance(rule.last_processed, rule.frequency)
    if next_date <= today:
        return DueDecision(due=True, occurrence_date=today)
    return NOT_DUE


def next_occurrence(rule: RecurrenceRule, now: date | datetime) -> date | None:
    """Earliest date on or after ``now`` at which the rule would fire."""
    if not rule.is_active:
        return None
    today = _as_date(now)
    if rule.last_processed is None:
        candidate = rule.start_date
    else:
        candidate = advance(rule.last_processed, rule.frequency)
    candidate = max(candidate, today)
    if rule.end_date is not None and candidate > rule.end_date:
        return None
    return candidate


def _add_months(value: date, months: int) -> date:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
