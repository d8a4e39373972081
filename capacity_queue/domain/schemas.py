"""Agent, business-hours and decision models shared by the pure evaluators."""

import re
from datetime import datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

ALL_DAYS = frozenset(range(7))


class AgentKind(str, Enum):
    """Agent variants; each has its own capacity strategy."""

    AI = "ai"
    HUMAN = "human"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


def parse_hhmm(value: str) -> time:
    """Parse a local "HH:MM" time-of-day string."""
    match = _HHMM.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


class BusinessHoursConfig(BaseModel):
    """A tenant's (or agent's) admission window.

    Weekday indices use 0 = Sunday, so Monday to Friday is {1, 2, 3, 4, 5}.
    """

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    timezone: str = "UTC"
    days: frozenset[int] = ALL_DAYS

    @field_validator("start", "end")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        parse_hhmm(value)
        return value.strip()

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @field_validator("days")
    @classmethod
    def _valid_days(cls, value: frozenset[int]) -> frozenset[int]:
        if not value:
            raise ValueError("At least one business day is required")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("Weekday indices must be within 0-6 (0 = Sunday)")
        return value

    @model_validator(mode="after")
    def _start_before_end(self) -> "BusinessHoursConfig":
        if parse_hhmm(self.start) >= parse_hhmm(self.end):
            raise ValueError(f"Window start {self.start} must be before end {self.end}")
        return self

    @property
    def start_time(self) -> time:
        return parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return parse_hhmm(self.end)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class WorkingHours(BaseModel):
    """Human agent shift; applies every day of the week."""

    model_config = ConfigDict(frozen=True)

    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "UTC"


class Agent(BaseModel):
    """Agent record as listed by the agent directory.

    The agent's current load is never stored here; it is derived from the
    assignment store for each decision (see AgentCandidate).
    """

    id: str
    tenant_id: str
    name: str = ""
    kind: AgentKind
    status: AgentStatus = AgentStatus.ACTIVE
    max_concurrent: int = Field(ge=0)
    working_hours: WorkingHours | None = None
    usage_quota: int | None = Field(default=None, ge=0)
    avg_response_minutes: float | None = Field(default=None, gt=0)


class AgentCandidate(BaseModel):
    """An agent paired with freshly derived load figures for one decision."""

    agent: Agent
    current_load: int = Field(ge=0)
    monthly_usage: int = Field(default=0, ge=0)

    @property
    def utilization(self) -> float:
        if self.agent.max_concurrent <= 0:
            return float("inf")
        return self.current_load / self.agent.max_concurrent


class BusinessHoursStatus(BaseModel):
    in_window: bool
    next_window_start: datetime | None = None
    hours_until_open: int | None = None
    reason: str | None = None


class CapacityDecision(BaseModel):
    admit: bool
    reason: str
    retry_after: timedelta | None = None


class AgentCapacityReport(BaseModel):
    """Dashboard row describing one agent's capacity."""

    agent_id: str
    agent_name: str
    kind: AgentKind
    current_load: int
    max_concurrent: int
    utilization_rate: float  # percentage
    status: str  # available | busy
    reason: str
    retry_after_minutes: int | None = None
