import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Auth (token validation only, issuance lives elsewhere)
    jwt_secret: str | None = os.getenv("JWT_SECRET")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Background jobs
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    # Webhooks
    webhook_require_signature: bool = _env_bool("WEBHOOK_REQUIRE_SIGNATURE")
    webhook_rate_limit_per_minute: int = int(os.getenv("WEBHOOK_RATE_LIMIT_PER_MINUTE", "60"))

    # Deployments
    deploy_workdir: str | None = os.getenv("DEPLOY_WORKDIR") or None
    deploy_timeout_seconds: int = int(os.getenv("DEPLOY_TIMEOUT_SECONDS", "0"))
    deploy_outcome_max_retries: int = int(os.getenv("DEPLOY_OUTCOME_MAX_RETRIES", "3"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "plain")

    # Runtime flags
    testing: bool = _env_bool("TESTING")

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self


settings = Settings()
