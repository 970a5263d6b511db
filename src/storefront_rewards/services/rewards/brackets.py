"""Ten-receipt spend bracket tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import ConcurrencyConflict, InvalidAmount
from storefront_rewards.core.settings import settings
from storefront_rewards.models.rewards import RewardTransactionKind
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .catalog import BracketTier, RewardCatalog, match_tier
from .ledger import CycleAdvance, LedgerStore, as_utc, is_positive_amount, utcnow

_MAX_ATTEMPTS = 2


@dataclass(slots=True)
class CycleProgress:
    receipts: int
    spend: int


@dataclass(slots=True)
class BracketOutcome:
    """Result of recording one purchase against the bracket cycle."""

    cycle_completed: bool
    reward_awarded: int
    cycle_progress: CycleProgress
    tier: BracketTier | None = None
    completed_cycle_spend: int | None = None
    custom_tier: bool = False
    credit_failed: bool = False
    duplicate: bool = False
    purchase_count: int | None = None
    total_spend: int | None = None


@dataclass(slots=True)
class _Attempt:
    advance: CycleAdvance | None
    duplicate_progress: CycleProgress | None = None


class SpendBracketTracker:
    """Accumulate purchases into fixed-size cycles and pay the matching tier bonus."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: RewardCatalog,
        *,
        cycle_size: int | None = None,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._ledger = LedgerStore(session)
        self._catalog = catalog
        self._cycle_size = cycle_size or settings.bracket_cycle_size
        self._store = store or get_rewards_store()

    async def record_purchase(
        self,
        user_id: UUID,
        purchase_amount: Any,
        *,
        order_id: str | None = None,
        purchased_at: datetime | None = None,
    ) -> BracketOutcome:
        if not is_positive_amount(purchase_amount):
            raise InvalidAmount(purchase_amount)

        moment = as_utc(purchased_at) if purchased_at else utcnow()
        attempt: _Attempt | None = None
        tier: BracketTier | None = None
        for attempt_number in range(1, _MAX_ATTEMPTS + 1):
            attempt = await self._apply_once(user_id, purchase_amount, order_id=order_id, now=moment)
            if attempt.duplicate_progress is not None:
                await self._db.rollback()
                logger.info("Ignored duplicate purchase", user_id=str(user_id), order_id=order_id)
                return BracketOutcome(
                    cycle_completed=False,
                    reward_awarded=0,
                    cycle_progress=attempt.duplicate_progress,
                    duplicate=True,
                )
            if attempt.advance is not None:
                if attempt.advance.completed:
                    tier = await self._record_owed_bonus(user_id, attempt.advance, order_id=order_id)
                await self._db.commit()
                break
            await self._db.rollback()
            logger.warning(
                "Bracket cycle changed concurrently",
                user_id=str(user_id),
                attempt=attempt_number,
            )
        else:
            raise ConcurrencyConflict("bracket_cycle", user_id)

        advance = attempt.advance
        if not advance.completed:
            return BracketOutcome(
                cycle_completed=False,
                reward_awarded=0,
                cycle_progress=CycleProgress(receipts=advance.cycle_receipts, spend=advance.cycle_spend),
                purchase_count=advance.purchase_count,
                total_spend=advance.total_spend,
            )

        return await self._settle_cycle(user_id, advance, tier)

    async def _apply_once(
        self,
        user_id: UUID,
        amount: int,
        *,
        order_id: str | None,
        now: datetime,
    ) -> _Attempt:
        state = await self._ledger.read_cycle_state(user_id)
        if state is None:
            await self._ledger.ensure_account(user_id)
            state = await self._ledger.read_cycle_state(user_id)

        inserted = await self._ledger.record_purchase_row(
            user_id, amount, order_id=order_id, purchased_at=now
        )
        if not inserted:
            return _Attempt(
                advance=None,
                duplicate_progress=CycleProgress(receipts=state.receipts, spend=state.spend),
            )

        advance = await self._ledger.try_advance_cycle(
            state, amount, cycle_size=self._cycle_size, now=now
        )
        return _Attempt(advance=advance)

    async def _record_owed_bonus(
        self,
        user_id: UUID,
        advance: CycleAdvance,
        *,
        order_id: str | None,
    ) -> BracketTier | None:
        """Log the tier bonus inside the cycle-reset transaction.

        The balance is credited afterwards, so a failed credit leaves the
        log ahead of ``points_earned`` and reconciliation reports the gap.
        """

        tier = match_tier(advance.cycle_spend, self._catalog.bracket_tiers)
        if tier is None or tier.reward_value <= 0:
            return tier
        await self._ledger.append_log(
            user_id,
            RewardTransactionKind.BRACKET_BONUS,
            amount=tier.reward_value,
            points_delta=tier.reward_value,
            description=f"Spend bracket bonus for {self._cycle_size} receipts",
            metadata={
                "cycle_spend": advance.cycle_spend,
                "tier_min": tier.min_spend,
                "tier_max": tier.max_spend,
                "order_id": order_id,
            },
        )
        return tier

    async def _settle_cycle(self, user_id: UUID, advance: CycleAdvance, tier: BracketTier | None) -> BracketOutcome:
        reward = tier.reward_value if tier else 0
        custom_tier = bool(tier and tier.customizable)
        outcome = BracketOutcome(
            cycle_completed=True,
            reward_awarded=0,
            cycle_progress=CycleProgress(receipts=0, spend=0),
            tier=tier,
            completed_cycle_spend=advance.cycle_spend,
            custom_tier=custom_tier,
            purchase_count=advance.purchase_count,
            total_spend=advance.total_spend,
        )
        if custom_tier:
            logger.warning(
                "Bracket cycle reached the custom reward tier",
                user_id=str(user_id),
                cycle_spend=advance.cycle_spend,
            )
        if tier is None:
            logger.warning("No bracket tier matched cycle spend", user_id=str(user_id), cycle_spend=advance.cycle_spend)

        if reward > 0:
            try:
                await self._ledger.credit_points(user_id, reward)
                await self._db.commit()
            except SQLAlchemyError:
                await self._db.rollback()
                logger.exception(
                    "Failed to credit bracket bonus; reconciliation will restore it",
                    user_id=str(user_id),
                    reward=reward,
                )
                self._store.record_bracket_credit_failure()
                outcome.credit_failed = True
                return outcome
            outcome.reward_awarded = reward

        self._store.record_bracket_completion(outcome.reward_awarded, custom_tier=custom_tier)
        logger.info(
            "Bracket cycle completed",
            user_id=str(user_id),
            cycle_spend=advance.cycle_spend,
            reward=outcome.reward_awarded,
        )
        return outcome


__all__ = ["BracketOutcome", "CycleProgress", "SpendBracketTracker"]
