from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.rbac import require_permissions, resolve_role
from app.metrics import generate_metrics_payload, metrics_content_type
from app.pipeline.api import router as pipeline_router

router = APIRouter()
router.include_router(pipeline_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "pipeline_policy": settings.pipeline_policy,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "role": resolve_role(user.roles),
    }


def _metrics_enabled() -> None:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")


@router.get("/metrics", tags=["system"], dependencies=[Depends(_metrics_enabled)])
def metrics(user: AuthUser = Depends(require_permissions("system.metrics.read"))) -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
