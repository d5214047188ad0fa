import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class RepoPlatform(str, enum.Enum):
    github = "github"
    gitlab = "gitlab"


class RepositoryConfig(Base):
    __tablename__ = "repository_configs"
    __table_args__ = (UniqueConstraint("repo_url", name="uq_repository_configs_repo_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    platform: Mapped[RepoPlatform] = mapped_column(
        Enum(RepoPlatform, name="repoplatform"), nullable=False, default=RepoPlatform.github
    )
    repo_url: Mapped[str] = mapped_column(String(512), nullable=False)
    deploy_action: Mapped[str | None] = mapped_column(String(512))
    # Never serialized outward
    access_token_encrypted: Mapped[str | None] = mapped_column(Text)
    webhook_secret_encrypted: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
