"""Per-user statistics used by badge and milestone rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.models.rewards import RewardPurchase

from .ledger import LedgerStore, as_utc


@dataclass(slots=True)
class UserStatistics:
    purchase_count: int
    total_spend: int
    referral_count: int
    order_streak: int
    event_hour: int


def compute_order_streak(purchase_times: Iterable[datetime], *, reference: datetime) -> int:
    """Count consecutive UTC days with a purchase, ending on ``reference``'s day."""

    days = {as_utc(moment).date() for moment in purchase_times}
    day = as_utc(reference).date()
    streak = 0
    while day in days:
        streak += 1
        day -= timedelta(days=1)
    return streak


async def load_user_statistics(
    session: AsyncSession,
    user_id: UUID,
    *,
    event_at: datetime,
    streak_lookback_days: int = 31,
) -> UserStatistics:
    ledger = LedgerStore(session)
    moment = as_utc(event_at)
    account = await ledger.account_snapshot(user_id)
    referral_count = await ledger.count_completed_referrals(user_id)

    window_start = moment - timedelta(days=max(streak_lookback_days, 1))
    stmt = select(RewardPurchase.purchased_at).where(
        RewardPurchase.user_id == user_id,
        RewardPurchase.purchased_at >= window_start,
    )
    purchase_times = (await session.execute(stmt)).scalars().all()

    return UserStatistics(
        purchase_count=account.purchase_count,
        total_spend=account.total_spend,
        referral_count=referral_count,
        order_streak=compute_order_streak(purchase_times, reference=moment),
        event_hour=moment.hour,
    )


__all__ = ["UserStatistics", "compute_order_streak", "load_user_statistics"]
