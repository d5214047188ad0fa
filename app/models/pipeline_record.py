import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class PipelineStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"
    canceled = "canceled"


class TriggerSource(str, enum.Enum):
    webhook = "webhook"
    auto = "auto"
    manual = "manual"


class PipelineRecord(Base):
    __tablename__ = "pipeline_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Plain reference: records outlive a deleted repository config.
    repo_config_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(100), index=True)
    ref: Mapped[str | None] = mapped_column(String(255))
    commit_sha: Mapped[str | None] = mapped_column(String(64))
    commit_message: Mapped[str | None] = mapped_column(Text)
    author: Mapped[str | None] = mapped_column(String(200))
    status: Mapped[PipelineStatus] = mapped_column(
        Enum(PipelineStatus, name="pipelinestatus"), nullable=False, default=PipelineStatus.pending
    )
    trigger_source: Mapped[TriggerSource] = mapped_column(
        Enum(TriggerSource, name="triggersource"), nullable=False, default=TriggerSource.webhook
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
