from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from storefront_rewards.core.exceptions import InsufficientPoints, OutOfStock, RewardUnavailable
from storefront_rewards.models.rewards import (
    RewardCredit,
    RewardCreditType,
    RewardRedemption,
    RewardRedemptionStatus,
    RewardStoreStock,
    RewardTransactionKind,
    RewardTransactionLogEntry,
)
from storefront_rewards.observability.rewards import get_rewards_store
from storefront_rewards.services.rewards import (
    LedgerStore,
    RewardStore,
    StoreItemCategory,
    reconcile_account,
)


NOW = datetime(2026, 10, 5, 10, 0, tzinfo=timezone.utc)


async def _user_with_points(session, create_user, email: str, points: int):
    user = await create_user(session, email)
    ledger = LedgerStore(session)
    await ledger.credit_points(user.id, points)
    await ledger.append_log(
        user.id,
        RewardTransactionKind.BRACKET_BONUS,
        amount=points,
        points_delta=points,
        description="seed",
    )
    await session.commit()
    return user


def _single_item_catalog(reward_catalog, slug: str, **changes):
    item = dataclasses.replace(reward_catalog.store_item(slug), **changes)
    return dataclasses.replace(reward_catalog, store_items=(item,))


@pytest.mark.asyncio
async def test_listing_orders_featured_first_and_filters(session_factory, reward_catalog) -> None:
    async with session_factory() as session:
        store = RewardStore(session, reward_catalog)

        listings = await store.list_items()
        deliveries = await store.list_items(StoreItemCategory.DELIVERIES)

    slugs = [listing.item.slug for listing in listings]
    assert slugs[:4] == ["discount-5", "discount-10", "free-delivery-1", "gift-card-500"]
    assert slugs[-1] == "gift-card-1000"
    assert listings[-1].stock_remaining == 50
    assert listings[0].stock_remaining is None
    assert [listing.item.slug for listing in deliveries] == ["free-delivery-1", "free-delivery-3", "free-delivery-5"]


@pytest.mark.asyncio
async def test_discount_redemption_issues_coded_credit(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await _user_with_points(session, create_user, "coupon@example.com", 1000)
        store = RewardStore(session, reward_catalog)

        redemption = await store.redeem_reward(user.id, "discount-10", now=NOW)

        assert redemption.status is RewardRedemptionStatus.FULFILLED
        assert redemption.points_spent == 250
        assert redemption.code.startswith("RWD-")
        assert redemption.expires_at == NOW + timedelta(days=30)

        credit = await session.get(RewardCredit, redemption.credit_id)
        assert credit.credit_type is RewardCreditType.DISCOUNT
        assert credit.value == 10
        assert credit.quantity_remaining == 1

        snapshot = await LedgerStore(session).account_snapshot(user.id)
        assert snapshot.available_points == 750

        entries = (
            await session.execute(
                select(RewardTransactionLogEntry).where(
                    RewardTransactionLogEntry.user_id == user.id,
                    RewardTransactionLogEntry.kind == RewardTransactionKind.REDEMPTION,
                )
            )
        ).scalars().all()
        assert [entry.points_delta for entry in entries] == [-250]
        assert entries[0].metadata_json["item"] == "discount-10"

        assert (await reconcile_account(session, user.id)).balanced is True
        assert [row.id for row in await store.list_redemptions(user.id)] == [redemption.id]

    snapshot = get_rewards_store().snapshot()
    assert snapshot.store["redemptions"] == 1
    assert snapshot.store["points_spent"] == 250


@pytest.mark.asyncio
async def test_free_delivery_and_gift_card_redemptions(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await _user_with_points(session, create_user, "bundle@example.com", 2000)
        store = RewardStore(session, reward_catalog)

        deliveries = await store.redeem_reward(user.id, "free-delivery-3", now=NOW)
        gift_card = await store.redeem_reward(user.id, "gift-card-500", now=NOW)

        credit = await session.get(RewardCredit, deliveries.credit_id)
        assert credit.credit_type is RewardCreditType.FREE_DELIVERY
        assert credit.quantity_remaining == 3

        assert gift_card.status is RewardRedemptionStatus.PENDING
        assert gift_card.code is None
        assert gift_card.credit_id is None

        snapshot = await LedgerStore(session).account_snapshot(user.id)
        assert snapshot.available_points == 600


@pytest.mark.asyncio
async def test_insufficient_points_leaves_stock_and_history(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await _user_with_points(session, create_user, "short@example.com", 100)
        store = RewardStore(session, reward_catalog)

        with pytest.raises(InsufficientPoints):
            await store.redeem_reward(user.id, "gift-card-1000", now=NOW)

        redemptions = (await session.execute(select(func.count(RewardRedemption.id)))).scalar_one()
        stock_rows = (await session.execute(select(func.count(RewardStoreStock.id)))).scalar_one()
        assert redemptions == 0
        assert stock_rows == 0

        listings = await store.list_items(StoreItemCategory.SPECIAL)
        assert {listing.item.slug: listing.stock_remaining for listing in listings}["gift-card-1000"] == 50
        assert (await LedgerStore(session).account_snapshot(user.id)).available_points == 100

    assert get_rewards_store().snapshot().store["rejected:insufficient_points"] == 1


@pytest.mark.asyncio
async def test_last_unit_sells_once(file_session_factory, reward_catalog, create_user) -> None:
    catalog = _single_item_catalog(reward_catalog, "gift-card-1000", stock=1)

    async with file_session_factory() as session:
        first = await _user_with_points(session, create_user, "first@example.com", 5000)
        second = await _user_with_points(session, create_user, "second@example.com", 5000)

    async with file_session_factory() as session:
        await RewardStore(session, catalog).redeem_reward(first.id, "gift-card-1000", now=NOW)

    async with file_session_factory() as session:
        with pytest.raises(OutOfStock):
            await RewardStore(session, catalog).redeem_reward(second.id, "gift-card-1000", now=NOW)

        remaining = (
            await session.execute(
                select(RewardStoreStock.remaining).where(RewardStoreStock.item_slug == "gift-card-1000")
            )
        ).scalar_one()
        assert remaining == 0
        assert (await LedgerStore(session).account_snapshot(second.id)).available_points == 5000
        assert await RewardStore(session, catalog).list_redemptions(second.id) == []

    assert get_rewards_store().snapshot().store["rejected:out_of_stock"] == 1


@pytest.mark.asyncio
async def test_unknown_or_inactive_item_is_unavailable(session_factory, reward_catalog, create_user) -> None:
    catalog = _single_item_catalog(reward_catalog, "discount-5", is_active=False)

    async with session_factory() as session:
        user = await _user_with_points(session, create_user, "browser@example.com", 1000)

        with pytest.raises(RewardUnavailable):
            await RewardStore(session, reward_catalog).redeem_reward(user.id, "mystery-box")
        with pytest.raises(RewardUnavailable):
            await RewardStore(session, catalog).redeem_reward(user.id, "discount-5")

        assert await RewardStore(session, catalog).list_items() == []
