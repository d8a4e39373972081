"""AgentRecord model: AI and human agents available to a tenant."""

from datetime import UTC, datetime

import structlog
from pydantic import ValidationError
from sqlalchemy import JSON, Column, DateTime, Float, Integer, String

from capacity_queue.core.config import Settings
from capacity_queue.db.base import Base
from capacity_queue.domain.schemas import Agent, AgentKind, AgentStatus, WorkingHours

logger = structlog.get_logger(__name__)


class AgentRecord(Base):
    __tablename__ = "agents"

    id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")

    kind = Column(String(20), nullable=False)  # ai | human
    status = Column(String(20), nullable=False, default="active")  # active | inactive

    # NULL falls back to the per-kind default from settings
    max_concurrent = Column(Integer, nullable=True)

    # Human only: {"start": "09:00", "end": "17:00", "timezone": "UTC"}
    working_hours = Column(JSON, nullable=True)

    # AI only: monthly conversation cap
    usage_quota = Column(Integer, nullable=True)

    # Historical average response time (maintained by analytics)
    avg_response_minutes = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))

    def default_max_concurrent(self, settings: Settings) -> int:
        if self.kind == AgentKind.AI.value:
            return settings.ai_default_max_concurrent
        return settings.human_default_max_concurrent

    def _parse_working_hours(self) -> WorkingHours | None:
        """Malformed shift JSON is logged and dropped so the agent stays listable."""
        if not self.working_hours:
            return None
        try:
            return WorkingHours.model_validate(self.working_hours)
        except ValidationError as exc:
            logger.warning(
                "agent_working_hours_invalid",
                agent_id=self.id,
                tenant_id=self.tenant_id,
                error=str(exc),
                error_type=type(exc).__name__,
                fallback="always_on_shift",
            )
            return None

    def to_agent(self, settings: Settings) -> Agent:
        return Agent(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name or "",
            kind=AgentKind(self.kind),
            status=AgentStatus(self.status),
            max_concurrent=self.max_concurrent if self.max_concurrent is not None else self.default_max_concurrent(settings),
            working_hours=self._parse_working_hours(),
            usage_quota=self.usage_quota,
            avg_response_minutes=self.avg_response_minutes,
        )
