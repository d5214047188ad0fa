"""Pipeline Ingestor — record webhook events and decide on automatic deploys."""

from __future__ import annotations

import logging
import urllib.parse

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import InvalidSignature, NotFound, RepositoryConflict
from app.models.pipeline_record import PipelineRecord, PipelineStatus, TriggerSource
from app.models.repo_config import RepoPlatform, RepositoryConfig
from app.schemas.devops import DevOpsSummary, PipelineRecordRead, RepoConfigRead
from app.services.devops_store import (
    PipelineRecordStore,
    RepositoryConfigStore,
    SqlPipelineRecordStore,
    SqlRepositoryConfigStore,
)
from app.services.repo_secrets import generate_webhook_secret, seal, unseal
from app.services.webhook_normalizer import CanonicalWebhookEvent, get_normalizer

logger = logging.getLogger(__name__)

SUMMARY_PIPELINE_LIMIT = 10
UNKNOWN_REPO_NAME = "Unknown"
DEFAULT_BRANCH_REFS = frozenset({"refs/heads/main", "main"})

_STATUS_MAP = {
    "success": PipelineStatus.success,
    "failed": PipelineStatus.failed,
    "failure": PipelineStatus.failed,
    "running": PipelineStatus.running,
    "pending": PipelineStatus.running,
    "canceled": PipelineStatus.canceled,
}


def map_status(value: str | None) -> PipelineStatus:
    """Map an inbound status string; unknown values fall back to pending."""
    return _STATUS_MAP.get(value or "", PipelineStatus.pending)


def should_auto_deploy(status: PipelineStatus, ref: str | None, deploy_action: str | None) -> bool:
    return (
        status == PipelineStatus.success
        and (ref or "") in DEFAULT_BRANCH_REFS
        and bool((deploy_action or "").strip())
    )


def _name_from_url(repo_url: str) -> str:
    path = urllib.parse.urlparse(repo_url).path.strip("/").removesuffix(".git")
    return path.rsplit("/", 1)[-1] or repo_url


class PipelineIngestor:
    def __init__(
        self,
        db: Session,
        *,
        configs: RepositoryConfigStore | None = None,
        records: PipelineRecordStore | None = None,
    ) -> None:
        self.db = db
        self.configs = configs or SqlRepositoryConfigStore(db)
        self.records = records or SqlPipelineRecordStore(db)

    def configure_repository(
        self,
        name: str | None,
        platform: RepoPlatform,
        repo_url: str,
        deploy_action: str | None = None,
        access_token: str | None = None,
        repo_config_id: int | None = None,
    ) -> RepoConfigRead:
        repo_url = repo_url.strip()
        if repo_config_id is not None:
            config = self.configs.get(repo_config_id)
            if config is None:
                raise NotFound(f"Repository config {repo_config_id} not found")
        else:
            config = RepositoryConfig(webhook_secret_encrypted=seal(generate_webhook_secret()))

        other = self.configs.get_by_url(repo_url)
        if other is not None and other.id != config.id:
            raise RepositoryConflict(f"Repository {repo_url} is already configured")

        config.name = (name or "").strip() or _name_from_url(repo_url)
        config.platform = platform
        config.repo_url = repo_url
        config.deploy_action = (deploy_action or "").strip() or None
        if access_token:
            config.access_token_encrypted = seal(access_token)

        config = self.configs.save(config)
        logger.info("Configured repository %s (%s)", config.id, config.repo_url)
        return RepoConfigRead.model_validate(config)

    def delete_repository(self, repo_config_id: int) -> None:
        config = self.configs.get(repo_config_id)
        if config is None:
            raise NotFound(f"Repository config {repo_config_id} not found")
        self.configs.delete(config)
        logger.info("Deleted repository config %s", repo_config_id)

    def get_summary(self) -> DevOpsSummary:
        configs = self.configs.list_all()
        names = {c.id: c.name for c in configs}
        records = self.records.list_recent(SUMMARY_PIPELINE_LIMIT)
        return DevOpsSummary(
            services=[RepoConfigRead.model_validate(c) for c in configs],
            pipelines=[self._project(r, names) for r in records],
        )

    def get_record(self, record_id: int) -> PipelineRecordRead:
        record = self.records.get(record_id)
        if record is None:
            raise NotFound(f"Pipeline record {record_id} not found")
        config = self.configs.get(record.repo_config_id)
        return self._project(record, {config.id: config.name} if config else {})

    def handle_webhook(
        self,
        event: CanonicalWebhookEvent,
        *,
        body: bytes | None = None,
        signature: str | None = None,
    ) -> PipelineRecord | None:
        """Record a canonical event against its configured repository.

        Events for unconfigured repositories are dropped without a record or
        an error. Returns the flushed record otherwise; the caller commits and
        then calls ``queue_auto_deploy``.
        """
        config = self.configs.get_by_url(event.repo_url)
        if config is None:
            logger.info(
                "Ignoring %s %s event for unconfigured repository %s",
                event.platform,
                event.event,
                event.repo_url,
            )
            return None

        if settings.webhook_require_signature:
            self._verify(event, config, body or b"", signature)

        status = map_status(event.status)
        record = PipelineRecord(
            repo_config_id=config.id,
            external_id=event.external_id or None,
            ref=event.ref,
            commit_sha=event.commit_sha,
            commit_message=event.commit_message,
            author=event.author,
            status=status,
            trigger_source=TriggerSource.webhook,
            duration=0,
        )
        record = self.records.save(record)
        logger.info(
            "Recorded %s event for repo %s as pipeline %s (%s)", event.event, config.id, record.id, status.value
        )
        return record

    def queue_auto_deploy(self, record: PipelineRecord) -> bool:
        """Queue the automatic deployment a committed webhook record calls for.

        Returns whether a deployment was queued. Queueing failures are logged
        and never propagate.
        """
        repo_config_id = record.repo_config_id
        try:
            config = self.configs.get(repo_config_id)
            if config is None or not should_auto_deploy(record.status, record.ref, config.deploy_action):
                return False

            from app.tasks.deploy import auto_deploy_repository

            auto_deploy_repository.delay(config.id, ref=record.ref, commit_sha=record.commit_sha)
        except Exception:
            logger.exception("Failed to queue auto-deploy for repo %s", repo_config_id)
            return False
        logger.info("Auto-deploy queued for repo %s at %s", repo_config_id, (record.commit_sha or "")[:12])
        return True

    def _verify(
        self,
        event: CanonicalWebhookEvent,
        config: RepositoryConfig,
        body: bytes,
        signature: str | None,
    ) -> None:
        secret = unseal(config.webhook_secret_encrypted)
        if not secret or not get_normalizer(event.platform).verify_signature(secret, body, signature):
            logger.warning("Rejected %s webhook for repo %s: bad signature", event.platform, config.id)
            raise InvalidSignature("Invalid webhook signature")

    @staticmethod
    def _project(record: PipelineRecord, names: dict[int, str]) -> PipelineRecordRead:
        view = PipelineRecordRead.model_validate(record)
        view.repo_name = names.get(record.repo_config_id, UNKNOWN_REPO_NAME)
        return view
