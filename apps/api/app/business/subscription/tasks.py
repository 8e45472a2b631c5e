from __future__ import annotations

from app.business.subscription.service import subscription_service
from app.core.celery_app import celery_app
from app.core.database import SessionLocal


@celery_app.task(name="app.tasks.apply_scheduled_plan_changes")
def apply_scheduled_plan_changes() -> int:
    with SessionLocal() as session:
        return subscription_service.apply_scheduled_plan_changes(session)
