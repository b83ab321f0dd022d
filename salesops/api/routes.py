from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from salesops.core.auth import AuthUser, get_current_user
from salesops.core.config import get_settings
from salesops.metrics import generate_metrics_payload, metrics_content_type
from salesops.sales.api import (
    appointments_router,
    jobs_router,
    mrr_router,
    stages_router,
    tasks_router,
    undo_router,
)

router = APIRouter()
router.include_router(appointments_router)
router.include_router(stages_router)
router.include_router(tasks_router)
router.include_router(mrr_router)
router.include_router(undo_router)
router.include_router(jobs_router)


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
        "name": user.name,
        "roles": user.roles,
        "team_ids": user.team_ids,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
