"""TenantBusinessHours model: per-tenant admission window (no row = 24/7)."""

from sqlalchemy import JSON, Boolean, Column, String

from capacity_queue.db.base import Base


class TenantBusinessHours(Base):
    __tablename__ = "tenant_business_hours"

    tenant_id = Column(String(255), primary_key=True)
    start = Column(String(5), nullable=False)  # "09:00"
    end = Column(String(5), nullable=False)  # "17:00"
    timezone = Column(String(64), nullable=False, default="UTC")
    days = Column(JSON, nullable=False)  # weekday indices, 0 = Sunday
    enabled = Column(Boolean, nullable=False, default=True)

    def as_config(self) -> dict:
        return {"start": self.start, "end": self.end, "timezone": self.timezone, "days": self.days}
