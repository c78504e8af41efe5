from celery import Celery

from app.config import settings

celery_app = Celery("ota_updates")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
)
celery_app.conf.beat_schedule = {
    "cleanup-stale-uploads": {
        "task": "app.tasks.cleanup.cleanup_stale_uploads",
        "schedule": max(60, settings.upload_tmp_max_age_seconds // 2),
    },
}
celery_app.autodiscover_tasks(["app.tasks"], related_name="cleanup")
