"""Referral link creation and conversion on the referee's qualifying purchase."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import InvalidAmount, InvalidReferral
from storefront_rewards.core.settings import settings
from storefront_rewards.models.rewards import (
    ReferralLink,
    ReferralStatus,
    RewardCreditType,
    RewardTransactionKind,
)
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .ledger import LedgerStore, as_utc, is_positive_amount, utcnow


@dataclass(slots=True)
class ReferralConversionOutcome:
    """What happened to a referee's pending link on a purchase."""

    link_id: UUID
    referrer_id: UUID
    converted: bool
    reward_issued: bool = False
    cap_reached: bool = False
    free_deliveries_credited: int = 0
    reason: str | None = None


class ReferralConversionTracker:
    def __init__(
        self,
        session: AsyncSession,
        *,
        min_order_amount: int | None = None,
        max_per_customer: int | None = None,
        free_deliveries: int | None = None,
        first_purchase_only: bool | None = None,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._ledger = LedgerStore(session)
        self._min_order_amount = (
            settings.referral_min_order_amount if min_order_amount is None else min_order_amount
        )
        self._max_per_customer = (
            settings.referral_max_per_customer if max_per_customer is None else max_per_customer
        )
        self._free_deliveries = settings.referral_free_deliveries if free_deliveries is None else free_deliveries
        self._first_purchase_only = (
            settings.referral_first_purchase_only if first_purchase_only is None else first_purchase_only
        )
        self._store = store or get_rewards_store()

    async def create_link(self, referrer_id: UUID, referee_id: UUID, *, now: datetime | None = None) -> ReferralLink:
        """Record that ``referee_id`` signed up through ``referrer_id``."""

        if referrer_id == referee_id:
            raise InvalidReferral("Users cannot refer themselves")

        inserted = await self._ledger.insert_if_absent(
            ReferralLink,
            {
                "referrer_id": referrer_id,
                "referee_id": referee_id,
                "status": ReferralStatus.PENDING,
                "reward_issued": False,
                "created_at": as_utc(now) if now else utcnow(),
            },
            index_elements=["referee_id"],
        )
        if not inserted:
            await self._db.rollback()
            raise InvalidReferral("Referee already has a referral link")

        await self._db.commit()
        self._store.record_referral_event("link_created")
        logger.info("Created referral link", referrer_id=str(referrer_id), referee_id=str(referee_id))
        return await self.get_link_for_referee(referee_id)

    async def get_link_for_referee(self, referee_id: UUID) -> ReferralLink | None:
        stmt = (
            select(ReferralLink)
            .where(ReferralLink.referee_id == referee_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def record_qualifying_purchase(
        self,
        user_id: UUID,
        purchase_amount: Any,
        *,
        purchase_count: int | None = None,
        now: datetime | None = None,
    ) -> ReferralConversionOutcome | None:
        """Convert the user's pending referral link if the purchase qualifies.

        Returns None when the user has no pending link, including replays
        after the link already completed.
        """

        if not is_positive_amount(purchase_amount):
            raise InvalidAmount(purchase_amount)

        link = await self.get_link_for_referee(user_id)
        if link is None or link.status is not ReferralStatus.PENDING:
            return None

        if purchase_amount < self._min_order_amount:
            logger.info(
                "Referral purchase below minimum",
                referee_id=str(user_id),
                amount=purchase_amount,
                minimum=self._min_order_amount,
            )
            return ReferralConversionOutcome(
                link_id=link.id,
                referrer_id=link.referrer_id,
                converted=False,
                reason="below_minimum",
            )

        if self._first_purchase_only:
            if purchase_count is None:
                purchase_count = (await self._ledger.account_snapshot(user_id)).purchase_count
            if purchase_count > 1:
                return ReferralConversionOutcome(
                    link_id=link.id,
                    referrer_id=link.referrer_id,
                    converted=False,
                    reason="not_first_purchase",
                )

        moment = as_utc(now) if now else utcnow()
        link_id, referrer_id = link.id, link.referrer_id
        if not await self._ledger.complete_referral_link(link_id, moment):
            await self._db.rollback()
            logger.info("Referral link already converted", referee_id=str(user_id))
            return None

        outcome = ReferralConversionOutcome(link_id=link_id, referrer_id=referrer_id, converted=True)
        prior_conversions = await self._ledger.count_completed_referrals(referrer_id, exclude_link_id=link_id)
        if prior_conversions >= self._max_per_customer:
            outcome.cap_reached = True
            await self._ledger.append_log(
                referrer_id,
                RewardTransactionKind.REFERRAL_CAP_REACHED,
                amount=0,
                description="Referral reward cap reached",
                metadata={"referee_id": str(user_id), "completed_referrals": prior_conversions + 1},
            )
        else:
            await self._ledger.issue_credit(
                referrer_id,
                RewardCreditType.FREE_DELIVERY,
                value=None,
                quantity=self._free_deliveries,
                source="referral",
                ttl_days=settings.reward_credit_ttl_days,
                now=moment,
            )
            await self._ledger.mark_referral_rewarded(link_id)
            await self._ledger.append_log(
                referrer_id,
                RewardTransactionKind.REFERRAL_BONUS,
                amount=self._free_deliveries,
                description=f"{self._free_deliveries} free deliveries for a referral",
                metadata={"referee_id": str(user_id), "purchase_amount": purchase_amount},
            )
            outcome.reward_issued = True
            outcome.free_deliveries_credited = self._free_deliveries

        await self._db.commit()
        self._store.record_referral_event("cap_reached" if outcome.cap_reached else "converted")
        logger.info(
            "Referral converted",
            referrer_id=str(referrer_id),
            referee_id=str(user_id),
            reward_issued=outcome.reward_issued,
            cap_reached=outcome.cap_reached,
        )
        return outcome


__all__ = ["ReferralConversionOutcome", "ReferralConversionTracker"]
