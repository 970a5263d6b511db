"""Purchase-completion entry point fanning out to every reward component."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import ConcurrencyConflict, InvalidAmount
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store
from storefront_rewards.observability.tracing import get_rewards_tracer

from .badges import BadgeRuleEvaluator, NewlyAwardedBadge
from .brackets import BracketOutcome, SpendBracketTracker
from .catalog import RewardCatalog
from .ledger import as_utc, is_positive_amount, utcnow
from .milestones import MilestoneAward, MilestoneEvaluator
from .referrals import ReferralConversionOutcome, ReferralConversionTracker


@dataclass
class PurchaseRewardsOutcome:
    """Combined result of a purchase. ``degraded`` means some reward step failed after acceptance."""

    user_id: UUID
    bracket: BracketOutcome | None = None
    badges: list[NewlyAwardedBadge] = field(default_factory=list)
    milestones: list[MilestoneAward] = field(default_factory=list)
    referral: ReferralConversionOutcome | None = None
    referrer_badges: list[NewlyAwardedBadge] = field(default_factory=list)
    referrer_milestones: list[MilestoneAward] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    degraded: bool = False


class PurchaseRewardPipeline:
    def __init__(
        self,
        session: AsyncSession,
        catalog: RewardCatalog,
        *,
        brackets: SpendBracketTracker | None = None,
        badges: BadgeRuleEvaluator | None = None,
        milestones: MilestoneEvaluator | None = None,
        referrals: ReferralConversionTracker | None = None,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._store = store or get_rewards_store()
        self._brackets = brackets or SpendBracketTracker(session, catalog, store=self._store)
        self._badges = badges or BadgeRuleEvaluator(session, catalog, store=self._store)
        self._milestones = milestones or MilestoneEvaluator(session, catalog, store=self._store)
        self._referrals = referrals or ReferralConversionTracker(session, store=self._store)

    async def process_purchase(
        self,
        user_id: UUID,
        amount: Any,
        *,
        order_id: str | None = None,
        purchased_at: datetime | None = None,
    ) -> PurchaseRewardsOutcome:
        """Run bracket, badge, referral and milestone processing for one purchase.

        An invalid amount, or a bracket update that lost its race twice, is
        raised because the purchase was not recorded. Every later failure is
        logged and reported through ``failures`` while the remaining steps
        still run.
        """

        if not is_positive_amount(amount):
            raise InvalidAmount(amount)

        moment = as_utc(purchased_at) if purchased_at else utcnow()
        with get_rewards_tracer().start_as_current_span("rewards.process_purchase") as span:
            span.set_attribute("rewards.user_id", str(user_id))
            outcome = await self._run(user_id, amount, order_id=order_id, moment=moment)
            span.set_attribute("rewards.degraded", outcome.degraded)
        return outcome

    async def _run(
        self,
        user_id: UUID,
        amount: int,
        *,
        order_id: str | None,
        moment: datetime,
    ) -> PurchaseRewardsOutcome:
        outcome = PurchaseRewardsOutcome(user_id=user_id)
        log = logger.bind(user_id=str(user_id), order_id=order_id)

        try:
            outcome.bracket = await self._brackets.record_purchase(
                user_id, amount, order_id=order_id, purchased_at=moment
            )
        except ConcurrencyConflict:
            # The purchase was never recorded; the caller has to retry it.
            await self._db.rollback()
            raise
        except Exception:
            await self._fail(outcome, "bracket", log)
        else:
            if outcome.bracket.credit_failed:
                outcome.failures.append("bracket_credit")
                outcome.degraded = True
            if outcome.bracket.duplicate:
                self._store.record_pipeline_run(degraded=False)
                return outcome

        try:
            outcome.badges = await self._badges.evaluate(user_id, event_at=moment)
        except Exception:
            await self._fail(outcome, "badges", log)

        purchase_count = outcome.bracket.purchase_count if outcome.bracket else None
        try:
            outcome.referral = await self._referrals.record_qualifying_purchase(
                user_id, amount, purchase_count=purchase_count, now=moment
            )
        except Exception:
            await self._fail(outcome, "referral", log)

        try:
            outcome.milestones = await self._milestones.evaluate(user_id, now=moment)
        except Exception:
            await self._fail(outcome, "milestones", log)

        if outcome.referral is not None and outcome.referral.converted:
            referrer_id = outcome.referral.referrer_id
            try:
                outcome.referrer_badges = await self._badges.evaluate(referrer_id, event_at=moment)
            except Exception:
                await self._fail(outcome, "referrer_badges", log)
            try:
                outcome.referrer_milestones = await self._milestones.evaluate(referrer_id, now=moment)
            except Exception:
                await self._fail(outcome, "referrer_milestones", log)

        self._store.record_pipeline_run(degraded=outcome.degraded, failed_steps=outcome.failures)
        if outcome.degraded:
            log.warning("Purchase rewards processed with failures", failures=outcome.failures)
        return outcome

    async def _fail(self, outcome: PurchaseRewardsOutcome, step: str, log: Any) -> None:
        log.exception("Reward step failed", step=step)
        await self._db.rollback()
        outcome.failures.append(step)
        outcome.degraded = True


__all__ = ["PurchaseRewardPipeline", "PurchaseRewardsOutcome"]
