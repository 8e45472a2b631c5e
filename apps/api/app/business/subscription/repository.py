from __future__ import annotations

from app.business.subscription.models import BusinessUsage, Subscription, SubscriptionChange, SubscriptionPlan
from app.platform.security.repository import BaseRepository


class PlanRepository(BaseRepository):
    resource = "subscription.plan"
    model = SubscriptionPlan


class SubscriptionRepository(BaseRepository):
    resource = "subscription.subscription"
    model = Subscription


class SubscriptionChangeRepository(BaseRepository):
    resource = "subscription.subscription_change"
    model = SubscriptionChange


class UsageRepository(BaseRepository):
    resource = "subscription.usage"
    model = BusinessUsage
