from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models.pipeline_record import PipelineStatus, TriggerSource
from app.models.repo_config import RepoPlatform


class ConfigRepoRequest(BaseModel):
    id: int | None = None
    name: str | None = Field(default=None, max_length=120)
    platform: RepoPlatform = Field(validation_alias=AliasChoices("type", "platform"))
    repo_url: str = Field(min_length=1, max_length=512)
    deploy_action: str | None = Field(
        default=None,
        max_length=512,
        validation_alias=AliasChoices("deploy_action", "deploy_script"),
    )
    access_token: str | None = None


class RepoConfigRead(BaseModel):
    """Public projection: never carries the access token or webhook secret."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    platform: RepoPlatform
    repo_url: str
    deploy_action: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PipelineRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    repo_config_id: int
    repo_name: str = "Unknown"
    external_id: str | None = None
    status: PipelineStatus
    trigger_source: TriggerSource
    ref: str | None = None
    commit_sha: str | None = None
    commit_message: str | None = None
    author: str | None = None
    duration: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime | None = None


class DevOpsSummary(BaseModel):
    services: list[RepoConfigRead]
    pipelines: list[PipelineRecordRead]


class WebhookAck(BaseModel):
    ok: bool = True
    action: str
    record_id: int | None = None
