from __future__ import annotations

from app.business.plan_change.models import PlanChangeExecution, PlanChangeFlow
from app.platform.security.repository import BaseRepository


class PlanChangeExecutionRepository(BaseRepository):
    resource = "plan_change.execution"
    model = PlanChangeExecution


class PlanChangeFlowRepository(BaseRepository):
    resource = "plan_change.flow"
    model = PlanChangeFlow
