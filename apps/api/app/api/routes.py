from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.analytics.api import router as analytics_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import activities_router, contacts_router, deals_router, pipelines_router
from app.messaging.api import router as messaging_router
from app.messaging.api import tracking_router, webhooks_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(contacts_router)
router.include_router(pipelines_router)
router.include_router(deals_router)
router.include_router(activities_router)
router.include_router(messaging_router)
router.include_router(tracking_router)
router.include_router(webhooks_router)
router.include_router(analytics_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "tenant_id": user.tenant_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
