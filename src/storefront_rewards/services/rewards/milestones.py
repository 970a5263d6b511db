"""Lifetime milestones that grant spins or bonus points."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.models.rewards import RewardTransactionKind, UserMilestoneAward
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .catalog import MilestoneDefinition, MilestoneMetric, MilestoneRewardType, RewardCatalog
from .ledger import LedgerStore, utcnow
from .statistics import UserStatistics, load_user_statistics


@dataclass(slots=True)
class MilestoneAward:
    slug: str
    name: str
    reward_type: MilestoneRewardType
    reward_value: int


def milestone_metric_value(milestone: MilestoneDefinition, stats: UserStatistics) -> int:
    if milestone.metric is MilestoneMetric.ORDERS:
        return stats.purchase_count
    if milestone.metric is MilestoneMetric.SPENDING:
        return stats.total_spend
    return stats.referral_count


class MilestoneEvaluator:
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

    async def evaluate(
        self,
        user_id: UUID,
        stats: UserStatistics | None = None,
        *,
        now: datetime | None = None,
    ) -> list[MilestoneAward]:
        """Award each crossed milestone once and commit."""

        moment = now or utcnow()
        if stats is None:
            stats = await load_user_statistics(self._db, user_id, event_at=moment, streak_lookback_days=1)

        stmt = select(UserMilestoneAward.milestone_slug).where(UserMilestoneAward.user_id == user_id)
        reached = set((await self._db.execute(stmt)).scalars().all())

        awards: list[MilestoneAward] = []
        for milestone in self._catalog.milestones:
            if milestone.slug in reached or milestone_metric_value(milestone, stats) < milestone.threshold:
                continue
            inserted = await self._ledger.insert_if_absent(
                UserMilestoneAward,
                {"user_id": user_id, "milestone_slug": milestone.slug, "awarded_at": moment},
                index_elements=["user_id", "milestone_slug"],
            )
            if not inserted:
                continue

            if milestone.reward_type is MilestoneRewardType.SPIN:
                await self._ledger.grant_spins(user_id, milestone.reward_value, reason=f"milestone:{milestone.slug}")
            else:
                await self._ledger.credit_points(user_id, milestone.reward_value)
                await self._ledger.append_log(
                    user_id,
                    RewardTransactionKind.MILESTONE_BONUS,
                    amount=milestone.reward_value,
                    points_delta=milestone.reward_value,
                    description=f"Milestone reached: {milestone.name}",
                    metadata={"milestone": milestone.slug},
                )

            self._store.record_milestone_award(milestone.slug)
            logger.info(
                "Milestone reached",
                user_id=str(user_id),
                milestone=milestone.slug,
                reward_type=milestone.reward_type.value,
                reward_value=milestone.reward_value,
            )
            awards.append(
                MilestoneAward(
                    slug=milestone.slug,
                    name=milestone.name,
                    reward_type=milestone.reward_type,
                    reward_value=milestone.reward_value,
                )
            )

        await self._db.commit()
        return awards


__all__ = ["MilestoneAward", "MilestoneEvaluator", "milestone_metric_value"]
