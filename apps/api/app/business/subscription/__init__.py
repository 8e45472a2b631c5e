from app.business.subscription.api import router
from app.business.subscription.models import BusinessUsage, Subscription, SubscriptionChange, SubscriptionPlan
from app.business.subscription.schemas import (
    PlanCreate,
    PlanRead,
    SubscriptionChangeRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageRead,
    UsageUpdate,
)
from app.business.subscription.service import (
    SubscriptionService,
    SubscriptionVersionConflictError,
    subscription_service,
)

__all__ = [
    "router",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionChange",
    "BusinessUsage",
    "PlanCreate",
    "PlanRead",
    "SubscriptionCreate",
    "SubscriptionRead",
    "SubscriptionChangeRead",
    "UsageRead",
    "UsageUpdate",
    "SubscriptionService",
    "SubscriptionVersionConflictError",
    "subscription_service",
]
