from celery import Celery

from app.config import settings

celery_app = Celery("deploy_relay")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A deploy action must not run twice because a worker died mid-task.
    task_acks_late=False,
    worker_prefetch_multiplier=1,
)
celery_app.autodiscover_tasks(["app.tasks"], related_name="deploy")
