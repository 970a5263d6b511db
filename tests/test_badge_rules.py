from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from storefront_rewards.models.rewards import (
    RewardPurchase,
    RewardTransactionKind,
    RewardTransactionLogEntry,
    UserBadgeAward,
    UserRewardAccount,
)
from storefront_rewards.services.rewards import BadgeRuleEvaluator
from storefront_rewards.services.rewards.statistics import compute_order_streak


NOON = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


async def _seed_account(session, user_id, *, purchases: int, spend: int) -> None:
    session.add(
        UserRewardAccount(
            user_id=user_id,
            purchase_count=purchases,
            total_spend=spend,
            current_cycle_receipts=purchases % 10,
            current_cycle_spend=0,
        )
    )
    await session.commit()


async def _points_earned(session, user_id) -> int:
    stmt = (
        select(UserRewardAccount.points_earned)
        .where(UserRewardAccount.user_id == user_id)
    )
    return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_evaluate_awards_every_satisfied_badge(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "badges@example.com")
        await _seed_account(session, user.id, purchases=10, spend=50000)
        evaluator = BadgeRuleEvaluator(session, reward_catalog)

        awarded = await evaluator.evaluate(user.id, event_at=NOON)

        assert {badge.slug for badge in awarded} == {"first-order", "regular-shopper"}
        assert await _points_earned(session, user.id) == 15000

        bonus_entries = (
            await session.execute(
                select(RewardTransactionLogEntry.amount).where(
                    RewardTransactionLogEntry.kind == RewardTransactionKind.BADGE_BONUS
                )
            )
        ).scalars().all()
        assert sorted(bonus_entries) == [5000, 10000]


@pytest.mark.asyncio
async def test_reevaluation_is_idempotent(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "again@example.com")
        await _seed_account(session, user.id, purchases=1, spend=1000)
        evaluator = BadgeRuleEvaluator(session, reward_catalog)

        first = await evaluator.evaluate(user.id, event_at=NOON)
        second = await evaluator.evaluate(user.id, event_at=NOON)

        assert [badge.slug for badge in first] == ["first-order"]
        assert second == []
        assert await _points_earned(session, user.id) == 5000


@pytest.mark.asyncio
async def test_concurrent_evaluation_awards_once(session_factory, reward_catalog, create_user, monkeypatch) -> None:
    async with session_factory() as session:
        user = await create_user(session, "stale@example.com")
        await _seed_account(session, user.id, purchases=1, spend=1000)
        await BadgeRuleEvaluator(session, reward_catalog).evaluate(user.id, event_at=NOON)

        stale = BadgeRuleEvaluator(session, reward_catalog)

        async def nothing_earned(user_id):
            return set()

        monkeypatch.setattr(stale, "_earned_slugs", nothing_earned)
        awarded = await stale.evaluate(user.id, event_at=NOON)

        assert awarded == []
        assert await _points_earned(session, user.id) == 5000
        awards = (
            await session.execute(select(func.count(UserBadgeAward.id)).where(UserBadgeAward.user_id == user.id))
        ).scalar_one()
        assert awards == 1


@pytest.mark.asyncio
async def test_order_streak_badge(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "streak@example.com")
        await _seed_account(session, user.id, purchases=3, spend=3000)
        for days_ago in range(3):
            session.add(RewardPurchase(user_id=user.id, amount=1000, purchased_at=NOON - timedelta(days=days_ago)))
        await session.commit()

        awarded = await BadgeRuleEvaluator(session, reward_catalog).evaluate(user.id, event_at=NOON)

        assert "streak-starter" in {badge.slug for badge in awarded}
        assert "week-warrior" not in {badge.slug for badge in awarded}


def test_compute_order_streak_stops_at_gap() -> None:
    purchases = [NOON, NOON - timedelta(days=1), NOON - timedelta(days=3)]

    assert compute_order_streak(purchases, reference=NOON) == 2
    assert compute_order_streak(purchases, reference=NOON + timedelta(days=1)) == 0
    assert compute_order_streak([], reference=NOON) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("event_at", "expected"),
    [
        (datetime(2026, 10, 14, 6, 30, tzinfo=timezone.utc), "early-bird"),
        (datetime(2026, 10, 14, 23, 15, tzinfo=timezone.utc), "night-owl"),
    ],
)
async def test_time_of_day_badges(session_factory, reward_catalog, create_user, event_at, expected) -> None:
    async with session_factory() as session:
        user = await create_user(session, f"{expected}@example.com")
        await _seed_account(session, user.id, purchases=1, spend=1000)

        awarded = await BadgeRuleEvaluator(session, reward_catalog).evaluate(user.id, event_at=event_at)

        slugs = {badge.slug for badge in awarded}
        other = "night-owl" if expected == "early-bird" else "early-bird"
        assert expected in slugs
        assert other not in slugs


@pytest.mark.asyncio
async def test_special_badge_requires_explicit_award(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "reviewer@example.com")
        await _seed_account(session, user.id, purchases=0, spend=0)
        evaluator = BadgeRuleEvaluator(session, reward_catalog)

        assert await evaluator.evaluate(user.id, event_at=NOON) == []

        granted = await evaluator.award_badge(user.id, "reviewer")
        repeated = await evaluator.award_badge(user.id, "reviewer")

        assert granted is not None
        assert granted.bonus_points == 5000
        assert repeated is None
        assert await _points_earned(session, user.id) == 5000

        with pytest.raises(ValueError):
            await evaluator.award_badge(user.id, "does-not-exist")


@pytest.mark.asyncio
async def test_progress_lists_upcoming_badges(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "progress@example.com")
        await _seed_account(session, user.id, purchases=5, spend=80000)
        evaluator = BadgeRuleEvaluator(session, reward_catalog)
        await evaluator.evaluate(user.id, event_at=NOON)

        progress = await evaluator.progress(user.id, limit=2)

        assert [badge.slug for badge in progress.earned] == ["first-order"]
        assert len(progress.upcoming) == 2
        assert progress.upcoming[0].slug == "big-spender"
        assert progress.upcoming[0].percentage == 80
        assert progress.upcoming[1].slug == "regular-shopper"
        assert progress.statistics.purchase_count == 5
