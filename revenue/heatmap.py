import calendar
from datetime import date
from typing import Iterable

from engagement.errors import ValidationError

from .candidates import Candidate, CandidateKind
from .models import ActivityLevel, HeatmapDay


def activity_level(total: int) -> ActivityLevel:
    if total > 5:
        return ActivityLevel.HIGH
    if total > 3:
        return ActivityLevel.MEDIUM
    if total > 0:
        return ActivityLevel.LOW
    return ActivityLevel.NONE


def calendar_heatmap(candidates: Iterable[Candidate], year: int, month: int) -> list[HeatmapDay]:
    """One entry per day of the month, counting candidates dated exactly on it."""
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")

    days_in_month = calendar.monthrange(year, month)[1]
    transactions = [0] * (days_in_month + 1)
    notifications = [0] * (days_in_month + 1)

    for candidate in candidates:
        moment = candidate.parsed_date.date()
        if moment.year != year or moment.month != month:
            continue
        if candidate.kind == CandidateKind.NOTIFICATION:
            notifications[moment.day] += 1
        else:
            transactions[moment.day] += 1

    days = []
    for day in range(1, days_in_month + 1):
        total = transactions[day] + notifications[day]
        days.append(HeatmapDay(
            day=date(year, month, day),
            transactions=transactions[day],
            notifications=notifications[day],
            total=total,
            level=activity_level(total),
        ))
    return days
