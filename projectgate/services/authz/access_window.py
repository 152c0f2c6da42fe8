from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from projectgate.core.errors import ValidationFailure


@dataclass(frozen=True)
class AccessWindow:
    """Hours of the day (and optionally days of the week) when access is open.

    ``end_hour`` is exclusive. A window whose start is later than its end
    wraps past midnight, so 22 -> 2 covers 22:00 through 01:59. Days use
    0 = Sunday through 6 = Saturday and are evaluated in ``timezone``.
    """

    start_hour: int
    end_hour: int
    timezone: str = "UTC"
    days_of_week: frozenset[int] = frozenset()

    def __post_init__(self) -> None:
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 23:
                raise ValidationFailure(f"Access window hour out of range: {hour}")
        for day in self.days_of_week:
            if not 0 <= day <= 6:
                raise ValidationFailure(f"Access window day out of range: {day}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationFailure(f"Unknown timezone: {self.timezone}") from exc


def is_within_access_window(window: AccessWindow, now: datetime | None = None) -> bool:
    # Naive datetimes are taken as UTC.
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    local = current.astimezone(ZoneInfo(window.timezone))

    if window.days_of_week and local.isoweekday() % 7 not in window.days_of_week:
        return False
    if window.start_hour <= window.end_hour:
        return window.start_hour <= local.hour < window.end_hour
    return local.hour >= window.start_hour or local.hour < window.end_hour
