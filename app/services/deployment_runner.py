"""
Deployment Runner — run a repository's deploy action and record the outcome.

A trigger creates a ``running`` pipeline record synchronously and hands the
command to a Celery worker. The worker writes exactly one terminal update
(``success`` or ``failed``) back onto that record.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NoDeployAction, NotFound, QueueUnavailable, StorageFailure
from app.metrics import DEPLOYMENTS_TOTAL
from app.models.pipeline_record import PipelineRecord, PipelineStatus, TriggerSource
from app.services.devops_store import (
    PipelineRecordStore,
    RepositoryConfigStore,
    SqlPipelineRecordStore,
    SqlRepositoryConfigStore,
)

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "System"
OUTPUT_LIMIT = 500
ELLIPSIS = "..."


def truncate_output(output: str, limit: int = OUTPUT_LIMIT) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + ELLIPSIS


def _make_aware(dt: datetime) -> datetime:
    """SQLite drops tzinfo; treat naive values as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def build_command(deploy_action: str) -> list[str]:
    argv = shlex.split(deploy_action)
    if argv and argv[0].endswith(".sh"):
        argv = ["bash", *argv]
    return argv


@dataclass(frozen=True)
class DeploymentOutcome:
    status: PipelineStatus
    output: str
    finished_at: datetime
    duration: int
    exit_code: int | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "output": self.output,
            "finished_at": self.finished_at.isoformat(),
            "duration": self.duration,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> DeploymentOutcome:
        exit_code = payload.get("exit_code")
        return cls(
            status=PipelineStatus(str(payload["status"])),
            output=str(payload.get("output") or ""),
            finished_at=_make_aware(datetime.fromisoformat(str(payload["finished_at"]))),
            duration=int(str(payload.get("duration") or 0)),
            exit_code=int(str(exit_code)) if exit_code is not None else None,
        )


def run_deploy_action(deploy_action: str, started_at: datetime) -> DeploymentOutcome:
    """Execute the deploy action and capture combined stdout/stderr.

    Blocks until the command exits, or until ``DEPLOY_TIMEOUT_SECONDS`` when
    that is set to a positive value.
    """
    timeout = settings.deploy_timeout_seconds or None
    exit_code: int | None = None
    try:
        argv = build_command(deploy_action)
        logger.info("Running deploy action: %s", " ".join(argv)[:200])
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            cwd=settings.deploy_workdir,
            timeout=timeout,
            check=False,
        )
        exit_code = result.returncode
        output = result.stdout or ""
        status = PipelineStatus.success if exit_code == 0 else PipelineStatus.failed
    except subprocess.TimeoutExpired as exc:
        partial = exc.output or ""
        if isinstance(partial, bytes):
            partial = partial.decode("utf-8", errors="replace")
        output = f"{partial}\nDeployment timed out after {timeout}s"
        status = PipelineStatus.failed
    except (OSError, ValueError) as exc:
        output = f"Failed to start deploy action: {exc}"
        status = PipelineStatus.failed

    started_at = _make_aware(started_at)
    finished_at = max(datetime.now(UTC), started_at)
    return DeploymentOutcome(
        status=status,
        output=truncate_output(output),
        finished_at=finished_at,
        duration=int((finished_at - started_at).total_seconds()),
        exit_code=exit_code,
    )


class DeploymentRunner:
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

    def trigger_deployment(
        self,
        repo_config_id: int,
        *,
        trigger_source: TriggerSource = TriggerSource.manual,
        ref: str | None = None,
        commit_sha: str | None = None,
    ) -> PipelineRecord:
        """Create a ``running`` record and queue the deploy action.

        The record is committed before the worker task is queued so the
        worker always finds it.
        """
        config = self.configs.get(repo_config_id)
        if config is None:
            raise NotFound(f"Repository config {repo_config_id} not found")
        deploy_action = (config.deploy_action or "").strip()
        if not deploy_action:
            raise NoDeployAction(f"Repository config {repo_config_id} has no deploy action")

        started_at = datetime.now(UTC)
        label = "Automatic" if trigger_source == TriggerSource.auto else "Manual"
        record = PipelineRecord(
            repo_config_id=config.id,
            ref=ref,
            commit_sha=commit_sha,
            commit_message=f"{label} deployment of {config.name}",
            author=SYSTEM_AUTHOR,
            status=PipelineStatus.running,
            trigger_source=trigger_source,
            duration=0,
            started_at=started_at,
        )
        record = self.records.save(record)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Could not commit deployment record for repo %s", config.id)
            raise StorageFailure() from exc

        from app.tasks.deploy import run_deployment

        record_id = record.id
        try:
            run_deployment.delay(record_id, deploy_action, started_at.isoformat())
        except Exception as exc:
            logger.exception("Could not queue deployment %s for repo %s", record_id, config.id)
            self._fail_unqueued(record, started_at, exc)
            raise QueueUnavailable(f"Deployment {record_id} could not be queued") from exc
        logger.info("Deployment %s queued for repo %s (%s)", record_id, config.id, trigger_source.value)
        return record

    def _fail_unqueued(self, record: PipelineRecord, started_at: datetime, exc: Exception) -> None:
        # No worker owns the record, so it must not stay running.
        try:
            record.status = PipelineStatus.failed
            record.finished_at = max(datetime.now(UTC), started_at)
            record.commit_message = truncate_output(f"Failed to queue deployment: {exc}")
            self.records.save(record)
            self.db.commit()
        except (StorageFailure, SQLAlchemyError):
            self.db.rollback()
            logger.exception("Deployment %s left running after queue failure", record.id)
            return
        DEPLOYMENTS_TOTAL.labels(status=PipelineStatus.failed.value).inc()

    def apply_outcome(self, record_id: int, outcome: DeploymentOutcome) -> bool:
        """Write the terminal state. Only a record still ``running`` is updated."""
        record = self.records.get(record_id)
        if record is None:
            logger.warning("Deployment %s vanished before its outcome was recorded", record_id)
            return False
        if record.status != PipelineStatus.running:
            logger.warning("Deployment %s already finished as %s; outcome ignored", record_id, record.status.value)
            return False
        if outcome.status not in (PipelineStatus.success, PipelineStatus.failed):
            raise ValueError(f"Invalid terminal status: {outcome.status.value}")

        record.status = outcome.status
        record.duration = outcome.duration
        record.finished_at = outcome.finished_at
        record.commit_message = outcome.output
        self.records.save(record)
        DEPLOYMENTS_TOTAL.labels(status=outcome.status.value).inc()
        logger.info("Deployment %s finished: %s in %ss", record_id, outcome.status.value, outcome.duration)
        return True
