from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from storefront_rewards.core.exceptions import ConcurrencyConflict, InvalidAmount
from storefront_rewards.models.rewards import RewardPurchase, UserSpinAllowance
from storefront_rewards.observability.rewards import get_rewards_store
from storefront_rewards.services.rewards import (
    BadgeRuleEvaluator,
    MilestoneEvaluator,
    PurchaseRewardPipeline,
    ReferralConversionTracker,
)
from storefront_rewards.services.rewards.ledger import LedgerStore


NOON = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_purchase_fans_out_to_every_component(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        referrer = await create_user(session, "referrer@example.com")
        referee = await create_user(session, "referee@example.com")
        await ReferralConversionTracker(session).create_link(referrer.id, referee.id, now=NOON)

        outcome = await PurchaseRewardPipeline(session, reward_catalog).process_purchase(
            referee.id, 15000, order_id="order-100", purchased_at=NOON
        )

        assert outcome.degraded is False
        assert outcome.failures == []
        assert outcome.bracket.cycle_progress.receipts == 1
        assert [badge.slug for badge in outcome.badges] == ["first-order"]
        assert [award.slug for award in outcome.milestones] == ["first-purchase"]
        assert outcome.referral is not None and outcome.referral.converted is True
        assert outcome.referral.reward_issued is True
        assert [badge.slug for badge in outcome.referrer_badges] == ["friend-finder"]
        assert outcome.referrer_milestones == []

        spins = (
            await session.execute(
                select(UserSpinAllowance.spins_available).where(UserSpinAllowance.user_id == referee.id)
            )
        ).scalar_one()
        assert spins == 1

    snapshot = get_rewards_store().snapshot()
    assert snapshot.pipeline["runs"] == 1
    assert "degraded" not in snapshot.pipeline


@pytest.mark.asyncio
async def test_failed_step_degrades_without_blocking_others(
    session_factory, reward_catalog, create_user, monkeypatch
) -> None:
    async def broken_evaluate(self, user_id, *, event_at=None):
        raise RuntimeError("badge store offline")

    monkeypatch.setattr(BadgeRuleEvaluator, "evaluate", broken_evaluate)

    async with session_factory() as session:
        referrer = await create_user(session, "host@example.com")
        referee = await create_user(session, "guest@example.com")
        await ReferralConversionTracker(session).create_link(referrer.id, referee.id, now=NOON)

        outcome = await PurchaseRewardPipeline(session, reward_catalog).process_purchase(
            referee.id, 15000, purchased_at=NOON
        )

        assert outcome.degraded is True
        assert outcome.failures == ["badges", "referrer_badges"]
        assert outcome.bracket is not None
        assert [award.slug for award in outcome.milestones] == ["first-purchase"]
        assert outcome.referral.converted is True

        purchases = (await session.execute(select(func.count(RewardPurchase.id)))).scalar_one()
        assert purchases == 1

    snapshot = get_rewards_store().snapshot()
    assert snapshot.pipeline["degraded"] == 1
    assert snapshot.pipeline["failed:badges"] == 1


@pytest.mark.asyncio
async def test_duplicate_order_skips_downstream_steps(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "repeat@example.com")
        pipeline = PurchaseRewardPipeline(session, reward_catalog)

        await pipeline.process_purchase(user.id, 2000, order_id="order-7", purchased_at=NOON)
        replay = await pipeline.process_purchase(user.id, 2000, order_id="order-7", purchased_at=NOON)

        assert replay.bracket.duplicate is True
        assert replay.badges == []
        assert replay.milestones == []
        assert replay.degraded is False


@pytest.mark.asyncio
async def test_invalid_amount_is_raised(session_factory, reward_catalog, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "zero@example.com")

        with pytest.raises(InvalidAmount):
            await PurchaseRewardPipeline(session, reward_catalog).process_purchase(user.id, 0)


@pytest.mark.asyncio
async def test_bracket_conflict_propagates(session_factory, reward_catalog, create_user, monkeypatch) -> None:
    async def always_stale(self, state, amount, *, cycle_size, now):
        return None

    monkeypatch.setattr(LedgerStore, "try_advance_cycle", always_stale)

    async with session_factory() as session:
        user = await create_user(session, "busy@example.com")

        with pytest.raises(ConcurrencyConflict):
            await PurchaseRewardPipeline(session, reward_catalog).process_purchase(user.id, 1000, purchased_at=NOON)

        purchases = (await session.execute(select(func.count(RewardPurchase.id)))).scalar_one()
        assert purchases == 0


@pytest.mark.asyncio
async def test_steps_run_in_purchase_order(session_factory, reward_catalog, create_user) -> None:
    calls: list[str] = []

    class RecordingBadges(BadgeRuleEvaluator):
        async def evaluate(self, user_id, *, event_at=None):
            calls.append("badges")
            return await super().evaluate(user_id, event_at=event_at)

    class RecordingReferrals(ReferralConversionTracker):
        async def record_qualifying_purchase(self, user_id, amount, **kwargs):
            calls.append("referral")
            return await super().record_qualifying_purchase(user_id, amount, **kwargs)

    class RecordingMilestones(MilestoneEvaluator):
        async def evaluate(self, user_id, *, now=None):
            calls.append("milestones")
            return await super().evaluate(user_id, now=now)

    async with session_factory() as session:
        user = await create_user(session, "ordered@example.com")
        pipeline = PurchaseRewardPipeline(
            session,
            reward_catalog,
            badges=RecordingBadges(session, reward_catalog),
            referrals=RecordingReferrals(session),
            milestones=RecordingMilestones(session, reward_catalog),
        )

        outcome = await pipeline.process_purchase(user.id, 1000, purchased_at=NOON)

    assert outcome.bracket is not None
    assert calls == ["badges", "referral", "milestones"]
