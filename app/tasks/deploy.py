"""
Deploy Tasks — Celery tasks owning the background half of a deployment.
"""

import logging
import time
from datetime import datetime

from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.db import SessionLocal
from app.errors import PipelineError, StorageFailure
from app.metrics import OUTCOMES_DROPPED, observe_job

logger = logging.getLogger(__name__)


@shared_task
def auto_deploy_repository(repo_config_id: int, ref: str | None = None, commit_sha: str | None = None) -> dict:
    """Start the deployment queued by a successful push to the default branch."""
    from app.models.pipeline_record import TriggerSource
    from app.services.deployment_runner import DeploymentRunner

    with SessionLocal() as db:
        try:
            record = DeploymentRunner(db).trigger_deployment(
                repo_config_id,
                trigger_source=TriggerSource.auto,
                ref=ref,
                commit_sha=commit_sha,
            )
        except PipelineError as exc:
            logger.warning("Auto-deploy for repo %s not started: %s", repo_config_id, exc)
            return {"success": False, "error": str(exc)}
    return {"success": True, "record_id": record.id}


@shared_task
def run_deployment(record_id: int, deploy_action: str, started_at: str) -> dict:
    """Execute the deploy action and write its terminal state.

    The command runs once. If the final write fails, the outcome is handed to
    ``record_deployment_outcome`` for retries rather than re-running the task.
    """
    from app.services.deployment_runner import DeploymentRunner, run_deploy_action

    t0 = time.monotonic()
    outcome = run_deploy_action(deploy_action, datetime.fromisoformat(started_at))
    observe_job("run_deployment", outcome.status.value, time.monotonic() - t0)

    with SessionLocal() as db:
        try:
            DeploymentRunner(db).apply_outcome(record_id, outcome)
            db.commit()
        except (StorageFailure, SQLAlchemyError):
            db.rollback()
            logger.warning("Could not record outcome of deployment %s; scheduling retry", record_id)
            record_deployment_outcome.delay(record_id, outcome.to_payload())
            return {"success": False, "record_id": record_id, "status": outcome.status.value}

    return {"success": True, "record_id": record_id, "status": outcome.status.value}


@shared_task(bind=True, max_retries=settings.deploy_outcome_max_retries, default_retry_delay=10)
def record_deployment_outcome(self, record_id: int, payload: dict) -> dict:
    """Retry the terminal write; exhausted retries end in the dead-letter log."""
    from app.services.deployment_runner import DeploymentOutcome, DeploymentRunner

    outcome = DeploymentOutcome.from_payload(payload)
    with SessionLocal() as db:
        try:
            DeploymentRunner(db).apply_outcome(record_id, outcome)
            db.commit()
            return {"success": True, "record_id": record_id}
        except (StorageFailure, SQLAlchemyError) as exc:
            db.rollback()
            if self.request.retries < self.max_retries:
                raise self.retry(exc=exc)

    OUTCOMES_DROPPED.inc()
    logger.error(
        "Dead letter: outcome of deployment %s lost after %s retries: %s",
        record_id,
        self.max_retries,
        payload,
    )
    return {"success": False, "record_id": record_id}
