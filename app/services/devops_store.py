"""Devops stores — durable repository configs and pipeline records.

The services depend on the two protocols below; the SQLAlchemy classes are the
only backend today. Every SQLAlchemy error is re-raised as an opaque
``StorageFailure`` so callers never see driver-specific exceptions.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import ParamSpec, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import StorageFailure
from app.models.pipeline_record import PipelineRecord
from app.models.repo_config import RepositoryConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

# Columns copied onto an existing row when a delivery is replayed.
_UPSERT_FIELDS = (
    "repo_config_id",
    "ref",
    "commit_sha",
    "commit_message",
    "author",
    "status",
    "trigger_source",
    "duration",
    "started_at",
    "finished_at",
)


class RepositoryConfigStore(Protocol):
    def get(self, repo_config_id: int) -> RepositoryConfig | None: ...

    def get_by_url(self, repo_url: str) -> RepositoryConfig | None: ...

    def list_all(self) -> list[RepositoryConfig]: ...

    def save(self, config: RepositoryConfig) -> RepositoryConfig: ...

    def delete(self, config: RepositoryConfig) -> None: ...


class PipelineRecordStore(Protocol):
    def get(self, record_id: int) -> PipelineRecord | None: ...

    def get_by_external_id(self, external_id: str) -> PipelineRecord | None: ...

    def list_recent(self, limit: int) -> list[PipelineRecord]: ...

    def save(self, record: PipelineRecord) -> PipelineRecord: ...


def _storage_guard(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return func(*args, **kwargs)
            except SQLAlchemyError as exc:
                logger.exception("Storage failure during %s", operation)
                raise StorageFailure() from exc

        return wrapper

    return decorator


class SqlRepositoryConfigStore:
    def __init__(self, db: Session):
        self.db = db

    @_storage_guard("repository config lookup")
    def get(self, repo_config_id: int) -> RepositoryConfig | None:
        return self.db.get(RepositoryConfig, repo_config_id)

    @_storage_guard("repository config lookup by url")
    def get_by_url(self, repo_url: str) -> RepositoryConfig | None:
        stmt = select(RepositoryConfig).where(RepositoryConfig.repo_url == repo_url)
        return self.db.scalars(stmt).first()

    @_storage_guard("repository config listing")
    def list_all(self) -> list[RepositoryConfig]:
        stmt = select(RepositoryConfig).order_by(RepositoryConfig.id)
        return list(self.db.scalars(stmt).all())

    @_storage_guard("repository config save")
    def save(self, config: RepositoryConfig) -> RepositoryConfig:
        self.db.add(config)
        self.db.flush()
        return config

    @_storage_guard("repository config delete")
    def delete(self, config: RepositoryConfig) -> None:
        self.db.delete(config)
        self.db.flush()


class SqlPipelineRecordStore:
    def __init__(self, db: Session):
        self.db = db

    @_storage_guard("pipeline record lookup")
    def get(self, record_id: int) -> PipelineRecord | None:
        return self.db.get(PipelineRecord, record_id)

    @_storage_guard("pipeline record lookup by external id")
    def get_by_external_id(self, external_id: str) -> PipelineRecord | None:
        stmt = (
            select(PipelineRecord)
            .where(PipelineRecord.external_id == external_id)
            .order_by(PipelineRecord.id)
        )
        return self.db.scalars(stmt).first()

    @_storage_guard("pipeline record listing")
    def list_recent(self, limit: int) -> list[PipelineRecord]:
        stmt = (
            select(PipelineRecord)
            .order_by(PipelineRecord.created_at.desc(), PipelineRecord.id.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    @_storage_guard("pipeline record save")
    def save(self, record: PipelineRecord) -> PipelineRecord:
        """Insert or update a record.

        A new record carrying an external id that is already stored updates
        that row in place (keeping its id and ``created_at``) instead of
        inserting a duplicate.
        """
        if record.id is None and record.external_id:
            existing = self.get_by_external_id(record.external_id)
            if existing is not None and existing is not record:
                columns = PipelineRecord.__table__.c
                for field in _UPSERT_FIELDS:
                    value = getattr(record, field)
                    # Unset NOT NULL columns keep the stored value.
                    if value is None and not columns[field].nullable:
                        continue
                    setattr(existing, field, value)
                if record in self.db:
                    self.db.expunge(record)
                self.db.flush()
                return existing
        self.db.add(record)
        self.db.flush()
        return record
