from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "error"]
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

    catalog = getattr(request.app.state, "reward_catalog", None)
    if catalog is None:
        components["reward_catalog"] = ComponentStatus(status="error", detail="Reward catalog not loaded")
    else:
        components["reward_catalog"] = ComponentStatus(
            status="ready",
            detail=f"{len(catalog.bracket_tiers)} tiers, {len(catalog.badges)} badges",
        )

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        components["database"] = ComponentStatus(status="error", detail=f"Database unreachable ({error})")
    else:
        components["database"] = ComponentStatus(status="ready")

    status = "error" if any(component.status == "error" for component in components.values()) else "ready"
    return ReadinessPayload(status=status, components=components)
