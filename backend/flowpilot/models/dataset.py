import uuid
from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from flowpilot.db.postgres import Base


class Dataset(Base):
    """Named CSV/JSON file used as a loop source."""
    __tablename__ = "datasets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    type: Mapped[str] = mapped_column(String(10))  # csv, json
    content_path: Mapped[str] = mapped_column(String(500))  # Relative to datasets_dir
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
