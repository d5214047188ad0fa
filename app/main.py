from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.deps import AuthConfig
from app.api.devops import router as devops_router
from app.api.health import router as health_router
from app.celery_app import celery_app  # noqa: F401
from app.config import settings
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware

configure_logging()

app = FastAPI(title="Deploy Relay API")
app.state.auth_config = AuthConfig.from_settings(settings)
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)

app.include_router(health_router)
app.include_router(devops_router)


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
