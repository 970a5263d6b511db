"""Points rewards store: priced items redeemed against the available balance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import InsufficientPoints, OutOfStock, RewardUnavailable
from storefront_rewards.core.settings import settings
from storefront_rewards.models.rewards import (
    RewardCreditType,
    RewardRedemption,
    RewardRedemptionStatus,
    RewardStoreItemType,
)
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .catalog import RewardCatalog, StoreItemCategory, StoreItemDefinition
from .ledger import LedgerStore, as_utc, utcnow

# Item types settled immediately by issuing a credit; the rest wait for fulfilment.
_CREDIT_BACKED = {
    RewardStoreItemType.DISCOUNT: RewardCreditType.DISCOUNT,
    RewardStoreItemType.FREE_DELIVERY: RewardCreditType.FREE_DELIVERY,
}


@dataclass(slots=True)
class StoreListing:
    item: StoreItemDefinition
    stock_remaining: int | None


def generate_redemption_code() -> str:
    return f"RWD-{uuid4().hex[:10].upper()}"


def sort_store_items(items: list[StoreItemDefinition]) -> list[StoreItemDefinition]:
    """Featured first, then display order, then cheapest."""

    return sorted(items, key=lambda item: (not item.is_featured, item.display_order, item.points_cost))


class RewardStore:
    def __init__(
        self,
        session: AsyncSession,
        catalog: RewardCatalog,
        *,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._ledger = LedgerStore(session)
        self._catalog = catalog
        self._store = store or get_rewards_store()

    async def list_items(self, category: StoreItemCategory | None = None) -> list[StoreListing]:
        items = [
            item
            for item in self._catalog.store_items
            if item.is_active and (category is None or item.category is category)
        ]
        levels = await self._ledger.store_stock_levels([item.slug for item in items if item.stock is not None])
        return [
            StoreListing(item=item, stock_remaining=None if item.stock is None else levels.get(item.slug, item.stock))
            for item in sort_store_items(items)
        ]

    async def redeem_reward(self, user_id: UUID, item_slug: str, *, now: datetime | None = None) -> RewardRedemption:
        """Spend points on a store item.

        Stock, points, the redemption row, any issued credit and the
        REDEMPTION log entry commit together; a sold-out item or a short
        balance rolls everything back.
        """

        item = self._catalog.store_item(item_slug)
        if item is None or not item.is_active:
            self._store.record_store_rejection("unavailable")
            raise RewardUnavailable(item_slug)

        moment = as_utc(now) if now else utcnow()
        expires_at = moment + timedelta(days=settings.reward_redemption_ttl_days)
        try:
            if item.stock is not None:
                remaining = await self._ledger.reserve_store_stock(item.slug, initial_stock=item.stock)
                if remaining is None:
                    raise OutOfStock(item.slug)

            redemption = RewardRedemption(
                user_id=user_id,
                item_slug=item.slug,
                item_type=item.item_type,
                points_spent=item.points_cost,
                status=RewardRedemptionStatus.PENDING,
                expires_at=expires_at,
                created_at=moment,
            )
            credit_type = _CREDIT_BACKED.get(item.item_type)
            if credit_type is not None:
                credit = await self._ledger.issue_credit(
                    user_id,
                    credit_type,
                    value=item.value if credit_type is RewardCreditType.DISCOUNT else None,
                    quantity=item.value if credit_type is RewardCreditType.FREE_DELIVERY else 1,
                    source=f"store:{item.slug}",
                    ttl_days=settings.reward_redemption_ttl_days,
                    now=moment,
                )
                redemption.code = generate_redemption_code()
                redemption.credit_id = credit.id
                redemption.status = RewardRedemptionStatus.FULFILLED
                redemption.fulfilled_at = moment
            self._db.add(redemption)
            await self._db.flush()

            await self._ledger.redeem_points(
                user_id,
                item.points_cost,
                description=f"Redeemed: {item.name}",
                metadata={"item": item.slug, "redemption_id": str(redemption.id)},
            )
            await self._db.commit()
        except OutOfStock:
            await self._db.rollback()
            self._store.record_store_rejection("out_of_stock")
            logger.info("Store item sold out", user_id=str(user_id), item=item.slug)
            raise
        except InsufficientPoints:
            await self._db.rollback()
            self._store.record_store_rejection("insufficient_points")
            raise
        except Exception:
            await self._db.rollback()
            raise

        self._store.record_store_redemption(item.slug, item.points_cost)
        logger.info(
            "Redeemed store item",
            user_id=str(user_id),
            item=item.slug,
            points=item.points_cost,
            status=redemption.status.value,
        )
        return redemption

    async def list_redemptions(self, user_id: UUID, *, limit: int = 50) -> list[RewardRedemption]:
        return await self._ledger.list_redemptions(user_id, limit=limit)


__all__ = ["RewardStore", "StoreListing", "generate_redemption_code", "sort_store_items"]
