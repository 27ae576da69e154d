import uuid
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from flowpilot.db.postgres import Base


class ScheduledJob(Base):
    """A run target owned by the external scheduler. Cron math lives there, not here."""
    __tablename__ = "scheduled_jobs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    test_type: Mapped[str] = mapped_column(String(20), default="file")  # file, workflow
    target_identifier: Mapped[str] = mapped_column(String(500))  # Flow file path, or workflow id/name
    cron_schedule: Mapped[str | None] = mapped_column(String(100), nullable=True)  # Informational only
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_run_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
