from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from storefront_rewards.models.rewards import (
    RewardTransactionKind,
    RewardTransactionLogEntry,
    UserRewardAccount,
    UserSpinAllowance,
)
from storefront_rewards.services.rewards import MilestoneEvaluator
from storefront_rewards.services.rewards.statistics import UserStatistics


NOW = datetime(2026, 10, 5, 10, 0, tzinfo=timezone.utc)


def _stats(**values) -> UserStatistics:
    base = {"purchase_count": 0, "total_spend": 0, "referral_count": 0, "order_streak": 0, "event_hour": 10}
    base.update(values)
    return UserStatistics(**base)


@pytest.mark.asyncio
async def test_order_milestones_grant_spins_once(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "milestone@example.com")
        evaluator = MilestoneEvaluator(session, reward_catalog)

        first = await evaluator.evaluate(user.id, _stats(purchase_count=5), now=NOW)
        repeat = await evaluator.evaluate(user.id, _stats(purchase_count=6), now=NOW)

        assert {award.slug for award in first} == {"first-purchase", "fifth-purchase"}
        assert repeat == []

        spins = (
            await session.execute(select(UserSpinAllowance.spins_available).where(UserSpinAllowance.user_id == user.id))
        ).scalar_one()
        assert spins == 3


@pytest.mark.asyncio
async def test_points_milestone_writes_audit_entry(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "quarter@example.com")
        evaluator = MilestoneEvaluator(session, reward_catalog)

        awards = await evaluator.evaluate(user.id, _stats(purchase_count=25), now=NOW)

        assert "quarter-century" in {award.slug for award in awards}
        points = (
            await session.execute(select(UserRewardAccount.points_earned).where(UserRewardAccount.user_id == user.id))
        ).scalar_one()
        assert points == 25000
        kinds = (
            await session.execute(
                select(RewardTransactionLogEntry.kind).where(RewardTransactionLogEntry.user_id == user.id)
            )
        ).scalars().all()
        assert kinds == [RewardTransactionKind.MILESTONE_BONUS]


@pytest.mark.asyncio
async def test_referral_milestones_use_completed_referrals(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "connector@example.com")
        evaluator = MilestoneEvaluator(session, reward_catalog)

        awards = await evaluator.evaluate(user.id, _stats(referral_count=5), now=NOW)

        assert {award.slug for award in awards} == {"referrals-3", "referrals-5"}
