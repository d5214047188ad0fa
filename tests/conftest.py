import asyncio
import os
import sys
import uuid
from datetime import UTC, datetime, timedelta
from types import ModuleType

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import jwt
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import DeclarativeBase, sessionmaker


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool


class SyncASGIClient:
    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///file:deploy_relay_test?mode=memory&cache=shared",
    connect_args={"check_same_thread": False, "uri": True},
)


class TestBase(DeclarativeBase):
    __test__ = False


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)

mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase  # type: ignore[attr-defined]
mock_db_module.SessionLocal = _TestSessionLocal  # type: ignore[attr-defined]
mock_db_module.get_engine = lambda: _test_engine  # type: ignore[attr-defined]

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    jwt_secret = "test-secret"
    jwt_algorithm = "HS256"
    celery_broker_url = "memory://"
    celery_result_backend = "cache+memory://"
    webhook_require_signature = False
    webhook_rate_limit_per_minute = 1000
    deploy_workdir = None
    deploy_timeout_seconds = 0
    deploy_outcome_max_retries = 3
    log_level = "WARNING"
    log_format = "plain"
    testing = True


mock_config_module.settings = MockSettings()  # type: ignore[attr-defined]
mock_config_module.Settings = MockSettings  # type: ignore[attr-defined]

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

os.environ["SETTINGS_ENCRYPTION_KEY"] = "QLUJktsTSfZEbST4R-37XmQ0tCkiVCBXZN2Zt053w8g="

# Now import the models - they'll use our mocked db module
from app.models.pipeline_record import PipelineRecord  # noqa: E402
from app.models.repo_config import RepoPlatform, RepositoryConfig  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    with engine.begin() as conn:
        conn.execute(delete(PipelineRecord))
        conn.execute(delete(RepositoryConfig))
    yield


@pytest.fixture()
def db_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limiters():
    from app.rate_limit import webhook_limiter

    webhook_limiter.reset()


@pytest.fixture()
def settings():
    return mock_config_module.settings


@pytest.fixture()
def repo_config(db_session):
    from app.services.repo_secrets import generate_webhook_secret, seal

    config = RepositoryConfig(
        name="app",
        platform=RepoPlatform.github,
        repo_url="https://git.example/app",
        deploy_action="deploy.sh",
        webhook_secret_encrypted=seal(generate_webhook_secret()),
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    from app.api.deps import get_db
    from app.main import app

    def override_get_db():
        return db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield SyncASGIClient(app)
    finally:
        app.dependency_overrides.clear()


def _create_access_token(subject: str, roles: list[str] | None = None, secret: str = "test-secret") -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "roles": roles or [],
        "typ": "access",
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return str(jwt.encode(payload, secret, algorithm="HS256"))


@pytest.fixture()
def auth_headers():
    token = _create_access_token(str(uuid.uuid4()), roles=["admin"])
    return {"Authorization": f"Bearer {token}"}
