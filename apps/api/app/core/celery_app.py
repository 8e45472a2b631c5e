from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("plan_change_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "apply-scheduled-plan-changes": {
        "task": "app.tasks.apply_scheduled_plan_changes",
        "schedule": 300.0,
    },
}
celery_app.autodiscover_tasks(["app.business.subscription"], related_name="tasks")
