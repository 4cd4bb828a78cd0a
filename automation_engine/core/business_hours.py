"""Rolling scheduled instants forward into business hours."""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.core import BusinessHours
from .exceptions import ConfigurationError

# A valid window always has a qualifying instant within two weeks
_MAX_DAYS_SCANNED = 14


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone '{name}'", config_key="timezone")


def roll_forward(
    instant: datetime,
    hours: BusinessHours,
    business_hours_only: bool = False,
    skip_weekends: bool = False
) -> datetime:
    """
    Move ``instant`` to the next qualifying instant.

    Args:
        instant: Naive UTC datetime
        hours: Business hours window in the organization's timezone
        business_hours_only: Require the instant to fall inside the daily window of a business day
        skip_weekends: Require the instant to fall on a business day

    Returns:
        Naive UTC datetime, ``instant`` itself if it already qualifies
    """
    if not business_hours_only and not skip_weekends:
        return instant

    zone = _zone(hours.timezone)
    local = instant.replace(tzinfo=timezone.utc).astimezone(zone)

    for _ in range(_MAX_DAYS_SCANNED):
        if (skip_weekends or business_hours_only) and local.weekday() not in hours.business_days:
            next_day = local.date() + timedelta(days=1)
            start = time(hours.start_hour) if business_hours_only else time(0)
            local = datetime.combine(next_day, start, tzinfo=zone)
            continue

        if business_hours_only:
            if local.hour < hours.start_hour:
                local = datetime.combine(local.date(), time(hours.start_hour), tzinfo=zone)
            elif local.hour >= hours.end_hour:
                next_day = local.date() + timedelta(days=1)
                local = datetime.combine(next_day, time(hours.start_hour), tzinfo=zone)
                continue

        break

    return local.astimezone(timezone.utc).replace(tzinfo=None)
