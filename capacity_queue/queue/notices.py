"""Customer-facing system messages sent when a message is queued."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from capacity_queue.domain.schemas import BusinessHoursConfig
from capacity_queue.queue.estimator import WaitTimeEstimator

GREETING = "Thank you for your message! "


def out_of_hours_notice(config: BusinessHoursConfig | None, opens_at: datetime | None, now: datetime) -> str:
    """Notice for messages received outside business hours.

    The reopening time is shown in the tenant's timezone, with the weekday when
    it isn't today.
    """
    if opens_at is None:
        return GREETING + "We'll get back to you as soon as possible."

    zone = config.zone if config is not None else ZoneInfo("UTC")
    local_open = opens_at.astimezone(zone)
    when = local_open.strftime("%H:%M")
    if local_open.date() != now.astimezone(zone).date():
        when = f"{local_open.strftime('%A')} at {when}"
    return GREETING + f"We're currently outside business hours. We'll respond when we're back {_on_or_at(when)}."


def _on_or_at(when: str) -> str:
    return f"on {when}" if " at " in when else f"at {when}"


def capacity_notice(retry_after: timedelta | None) -> str:
    """Notice for messages queued because every agent is busy."""
    if retry_after is None:
        return GREETING + "We'll get back to you as soon as possible."
    seconds = max(60, int(retry_after.total_seconds()))
    return (
        GREETING
        + "All of our agents are busy right now. "
        + f"An agent will be with you in about {WaitTimeEstimator.format_wait_time(seconds)}."
    )
