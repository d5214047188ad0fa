"""Devops API — repository config, pipeline history, webhooks and deploy triggers."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_user_auth
from app.errors import MalformedPayload, PipelineError, StorageFailure
from app.metrics import WEBHOOK_EVENTS
from app.rate_limit import webhook_limiter
from app.schemas.devops import (
    ConfigRepoRequest,
    DevOpsSummary,
    PipelineRecordRead,
    RepoConfigRead,
    WebhookAck,
)
from app.services.deployment_runner import DeploymentRunner
from app.services.pipeline_ingestor import PipelineIngestor
from app.services.webhook_normalizer import get_normalizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devops", tags=["devops"])


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Commit failed")
        raise StorageFailure().to_http() from exc


@router.post("/config", response_model=RepoConfigRead)
def configure_repository(
    body: ConfigRepoRequest,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    try:
        result = PipelineIngestor(db).configure_repository(
            name=body.name,
            platform=body.platform,
            repo_url=body.repo_url,
            deploy_action=body.deploy_action,
            access_token=body.access_token,
            repo_config_id=body.id,
        )
    except PipelineError as exc:
        db.rollback()
        raise exc.to_http()
    _commit(db)
    return result


@router.delete("/config/{repo_config_id}")
def delete_repository(
    repo_config_id: int,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    try:
        PipelineIngestor(db).delete_repository(repo_config_id)
    except PipelineError as exc:
        db.rollback()
        raise exc.to_http()
    _commit(db)
    return {"deleted": repo_config_id}


@router.get("/summary", response_model=DevOpsSummary)
def get_summary(
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    try:
        return PipelineIngestor(db).get_summary()
    except PipelineError as exc:
        raise exc.to_http()


@router.get("/pipelines/{record_id}", response_model=PipelineRecordRead)
def get_pipeline(
    record_id: int,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    try:
        return PipelineIngestor(db).get_record(record_id)
    except PipelineError as exc:
        raise exc.to_http()


@router.post("/webhooks/{platform}", response_model=WebhookAck)
async def receive_webhook(
    platform: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """Receive a platform webhook.

    Unauthenticated: repositories may opt into signature checks instead.
    Answers once the event is recorded; never waits for a deployment.
    """
    webhook_limiter.check(request)
    try:
        normalizer = get_normalizer(platform)
    except PipelineError as exc:
        raise exc.to_http()

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        WEBHOOK_EVENTS.labels(platform=platform, outcome="rejected").inc()
        raise MalformedPayload("Invalid JSON").to_http()

    ingestor = PipelineIngestor(db)
    try:
        event = normalizer.normalize(payload, request.headers.get(normalizer.event_header))
        if event is None:
            WEBHOOK_EVENTS.labels(platform=platform, outcome="ignored").inc()
            return WebhookAck(action="ignored")
        record = ingestor.handle_webhook(
            event,
            body=body,
            signature=request.headers.get(normalizer.signature_header),
        )
    except PipelineError as exc:
        db.rollback()
        WEBHOOK_EVENTS.labels(platform=platform, outcome="rejected").inc()
        raise exc.to_http()

    if record is None:
        WEBHOOK_EVENTS.labels(platform=platform, outcome="ignored").inc()
        return WebhookAck(action="ignored")
    _commit(db)
    WEBHOOK_EVENTS.labels(platform=platform, outcome="recorded").inc()
    ingestor.queue_auto_deploy(record)
    return WebhookAck(action="recorded", record_id=record.id)


@router.post(
    "/deploy/{repo_config_id}",
    response_model=PipelineRecordRead,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_deployment(
    repo_config_id: int,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    try:
        record = DeploymentRunner(db).trigger_deployment(repo_config_id)
        return PipelineIngestor(db).get_record(record.id)
    except PipelineError as exc:
        db.rollback()
        raise exc.to_http()
