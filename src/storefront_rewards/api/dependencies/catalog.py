from fastapi import HTTPException, Request, status

from storefront_rewards.services.rewards import RewardCatalog


def get_reward_catalog(request: Request) -> RewardCatalog:
    catalog = getattr(request.app.state, "reward_catalog", None)
    if catalog is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reward catalog not loaded",
        )
    return catalog
