from fastapi import Header, HTTPException, status

from storefront_rewards.core.settings import settings


async def require_checkout_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard collaborator-only endpoints when a checkout API key is configured."""

    if not settings.checkout_api_key:
        return

    if x_api_key != settings.checkout_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
