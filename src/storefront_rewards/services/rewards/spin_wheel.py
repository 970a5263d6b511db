"""Weighted spin wheel prize selection."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import ConfigurationError
from storefront_rewards.core.settings import settings
from storefront_rewards.models.rewards import (
    RewardCreditType,
    RewardTransactionKind,
    SpinHistoryEntry,
    SpinRewardType,
)
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .catalog import RewardCatalog, SpinRewardDefinition
from .ledger import LedgerStore, SpinAllowanceSnapshot, as_utc, utcnow


@dataclass(slots=True)
class SpinResult:
    reward_slug: str
    reward_name: str
    reward_type: SpinRewardType
    reward_value: int
    draw: float
    spins_remaining: int
    points_credited: int = 0
    credit_id: UUID | None = None


def select_spin_reward(draw: float, rewards: Sequence[SpinRewardDefinition]) -> SpinRewardDefinition:
    """Walk active rewards in catalog order and return the first whose cumulative weight exceeds ``draw``.

    A draw at or beyond the cumulative total resolves to the last active reward.
    """

    active = [reward for reward in rewards if reward.is_active]
    if not active:
        raise ConfigurationError("Spin catalog has no active rewards")

    cumulative = 0.0
    for reward in active:
        cumulative += reward.probability_weight
        if cumulative > draw:
            return reward
    return active[-1]


class SpinWheelPrizeSelector:
    """Consume a spin, draw a prize and credit it in one transaction."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: RewardCatalog,
        *,
        random_source: Callable[[], float] = random.random,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._ledger = LedgerStore(session)
        self._catalog = catalog
        self._random_source = random_source
        self._store = store or get_rewards_store()

    async def spin(self, user_id: UUID, *, now: datetime | None = None) -> SpinResult:
        moment = as_utc(now) if now else utcnow()
        try:
            remaining = await self._ledger.consume_spin(user_id, moment)
            draw = self._random_source() * 100.0
            reward = select_spin_reward(draw, self._catalog.spin_rewards)
            result = SpinResult(
                reward_slug=reward.slug,
                reward_name=reward.name,
                reward_type=reward.reward_type,
                reward_value=reward.reward_value,
                draw=draw,
                spins_remaining=remaining,
            )
            await self._credit(user_id, reward, result, now=moment)
            self._db.add(
                SpinHistoryEntry(
                    user_id=user_id,
                    reward_slug=reward.slug,
                    reward_name=reward.name,
                    reward_type=reward.reward_type,
                    reward_value=reward.reward_value,
                    draw=draw,
                    created_at=moment,
                )
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        self._store.record_spin(reward.reward_type.value)
        logger.info(
            "Spin completed",
            user_id=str(user_id),
            reward=reward.slug,
            draw=round(draw, 4),
            spins_remaining=remaining,
        )
        return result

    async def _credit(
        self,
        user_id: UUID,
        reward: SpinRewardDefinition,
        result: SpinResult,
        *,
        now: datetime,
    ) -> None:
        points_delta = 0
        if reward.reward_type is SpinRewardType.POINTS:
            await self._ledger.credit_points(user_id, reward.reward_value)
            points_delta = reward.reward_value
            result.points_credited = reward.reward_value
        else:
            credit = await self._ledger.issue_credit(
                user_id,
                RewardCreditType(reward.reward_type.value),
                value=reward.reward_value,
                quantity=1,
                source=f"spin:{reward.slug}",
                ttl_days=settings.reward_credit_ttl_days,
                now=now,
            )
            result.credit_id = credit.id

        await self._ledger.append_log(
            user_id,
            RewardTransactionKind.SPIN_WIN,
            amount=reward.reward_value,
            points_delta=points_delta,
            description=f"Spin wheel: {reward.name}",
            metadata={"reward": reward.slug, "reward_type": reward.reward_type.value, "draw": result.draw},
        )
        await self._ledger.record_spin_winnings(user_id, reward.reward_value)

    async def grant_spins(self, user_id: UUID, amount: int, *, reason: str) -> int:
        spins_available = await self._ledger.grant_spins(user_id, amount, reason=reason)
        await self._db.commit()
        return spins_available

    async def allowance(self, user_id: UUID, *, history_limit: int = 10) -> SpinAllowanceSnapshot:
        return await self._ledger.spin_snapshot(user_id, history_limit=history_limit)


__all__ = ["SpinResult", "SpinWheelPrizeSelector", "select_spin_reward"]
