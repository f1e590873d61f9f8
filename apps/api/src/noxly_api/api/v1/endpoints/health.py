from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from noxly_api.core.settings import settings
from noxly_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.exception("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    sweep_worker = getattr(request.app.state, "pending_sweep_worker", None)
    if settings.pending_sweep_worker_enabled and sweep_worker is not None:
        if sweep_worker.is_running:
            components["pending_sweep_worker"] = ComponentStatus(status="ready")
        else:
            components["pending_sweep_worker"] = ComponentStatus(
                status="degraded", detail="Pending sweep worker not running"
            )
            status = "degraded" if status != "error" else status
    else:
        components["pending_sweep_worker"] = ComponentStatus(
            status="disabled",
            detail="Pending sweep worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
