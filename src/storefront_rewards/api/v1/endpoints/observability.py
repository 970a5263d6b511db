"""Observability endpoints for reward engine telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storefront_rewards.api.dependencies.security import require_checkout_api_key
from storefront_rewards.observability.rewards import get_rewards_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/rewards",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Reward engine observability snapshot",
)
async def get_rewards_snapshot() -> dict[str, object]:
    """Retrieve bracket, badge, spin, referral and pipeline counters (requires checkout API key)."""
    store = get_rewards_store()
    return store.snapshot().as_dict()
