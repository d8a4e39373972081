"""Business-hours calculator: in/out-of-window verdict and next admission time.

Everything here is a pure function of (config, now). All timezone and calendar
arithmetic for the engine lives in this module.
"""

import math
from datetime import UTC, date, datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from capacity_queue.domain.schemas import BusinessHoursConfig, BusinessHoursStatus

logger = structlog.get_logger(__name__)


def load_business_hours(raw: BusinessHoursConfig | dict[str, Any] | None) -> BusinessHoursConfig | None:
    """Parse raw tenant configuration.

    Invalid configuration never blocks the pipeline: it is logged and treated
    as absent, which means always open.
    """
    if raw is None or isinstance(raw, BusinessHoursConfig):
        return raw
    try:
        return BusinessHoursConfig.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "business_hours_config_invalid",
            error=str(exc),
            error_type=type(exc).__name__,
            fallback="always_open",
        )
        return None


def weekday_index(day: date) -> int:
    """Weekday with 0 = Sunday, 6 = Saturday."""
    return (day.weekday() + 1) % 7


def next_business_day(current: int, days: frozenset[int]) -> int:
    """Number of days (1-7) until the next day in ``days`` after ``current``."""
    for offset in range(1, 8):
        if (current + offset) % 7 in days:
            return offset
    return 7


def evaluate(config: BusinessHoursConfig | None, now: datetime) -> BusinessHoursStatus:
    """Decide whether ``now`` falls inside the configured window.

    Args:
        config: Window configuration, or None for 24/7
        now: Current instant; naive values are taken as UTC

    Returns:
        BusinessHoursStatus; when out of window, next_window_start is the UTC
        instant admission reopens
    """
    if config is None:
        return BusinessHoursStatus(in_window=True)

    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    zone = config.zone
    local = now.astimezone(zone)
    today = local.date()
    current_day = weekday_index(today)
    time_of_day = local.time().replace(second=0, microsecond=0)

    if current_day not in config.days:
        offset = next_business_day(current_day, config.days)
        return _closed(config, now, today + timedelta(days=offset), "Outside business days")

    if config.start_time <= time_of_day <= config.end_time:
        return BusinessHoursStatus(in_window=True)

    reason = f"Outside business hours ({config.start} - {config.end})"
    if time_of_day < config.start_time:
        return _closed(config, now, today, reason)

    offset = next_business_day(current_day, config.days)
    return _closed(config, now, today + timedelta(days=offset), reason)


def _closed(config: BusinessHoursConfig, now: datetime, opening_day: date, reason: str) -> BusinessHoursStatus:
    opens_local = datetime.combine(opening_day, config.start_time, tzinfo=config.zone)
    opens_at = opens_local.astimezone(UTC)
    hours = (opens_at - now).total_seconds() / 3600
    return BusinessHoursStatus(
        in_window=False,
        next_window_start=opens_at,
        hours_until_open=max(0, math.ceil(hours)),
        reason=reason,
    )


def time_until_open(status: BusinessHoursStatus, now: datetime) -> timedelta | None:
    """Duration from ``now`` until the window reopens, or None when open."""
    if status.in_window or status.next_window_start is None:
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return max(timedelta(0), status.next_window_start - now)
