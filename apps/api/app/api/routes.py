from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.business.discounts.api import router as discounts_router
from app.business.payments.api import router as payment_methods_router
from app.business.plan_change.api import router as plan_change_router
from app.business.subscription.api import router as subscriptions_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(subscriptions_router)
router.include_router(payment_methods_router)
router.include_router(plan_change_router)
router.include_router(discounts_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "business_ids": user.business_ids,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
