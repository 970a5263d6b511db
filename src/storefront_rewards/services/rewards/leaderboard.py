"""Read-only leaderboard ranking over spend, orders, referrals and points."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.models.rewards import ReferralLink, ReferralStatus, RewardPurchase, UserRewardAccount
from storefront_rewards.models.user import User

from .ledger import as_utc, utcnow

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class LeaderboardCategory(str, Enum):
    SPENDING = "spending"
    ORDERS = "orders"
    REFERRALS = "referrals"
    POINTS = "points"


class LeaderboardPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all_time"


@dataclass(slots=True)
class RankedEntry:
    user_id: UUID
    score: int
    rank: int
    display_name: str | None = None


@dataclass(slots=True)
class RankedList:
    category: LeaderboardCategory
    period: LeaderboardPeriod
    period_start: datetime
    period_end: datetime
    entries: list[RankedEntry]
    requesting_user_entry: RankedEntry | None
    total_participants: int


def resolve_period_window(period: LeaderboardPeriod, now: datetime) -> tuple[datetime, datetime]:
    """Return the half-open ``[start, end)`` window for ``period`` ending at ``now``."""

    end = as_utc(now)
    if period is LeaderboardPeriod.WEEKLY:
        return end - timedelta(days=7), end
    if period is LeaderboardPeriod.MONTHLY:
        return end.replace(day=1, hour=0, minute=0, second=0, microsecond=0), end
    return _EPOCH, end


def dense_rank(rows: Sequence[tuple[UUID, int]]) -> list[RankedEntry]:
    """Dense-rank ``(user_id, score)`` rows by descending score.

    Ties share a rank and the next distinct score takes the following rank
    (500, 300, 300, 100 -> 1, 2, 2, 3). Tied users keep their input order.
    """

    ordered = sorted(rows, key=lambda row: row[1], reverse=True)
    ranked: list[RankedEntry] = []
    rank = 0
    previous: int | None = None
    for user_id, score in ordered:
        if score != previous:
            rank += 1
            previous = score
        ranked.append(RankedEntry(user_id=user_id, score=int(score), rank=rank))
    return ranked


class LeaderboardRankingAggregator:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def _scores(
        self,
        category: LeaderboardCategory,
        start: datetime,
        end: datetime,
    ) -> list[tuple[UUID, int]]:
        if category is LeaderboardCategory.POINTS:
            stmt = (
                select(UserRewardAccount.user_id, UserRewardAccount.points_earned)
                .where(UserRewardAccount.points_earned > 0)
                .order_by(UserRewardAccount.points_earned.desc())
            )
        elif category is LeaderboardCategory.REFERRALS:
            score = func.count(ReferralLink.id)
            stmt = (
                select(ReferralLink.referrer_id, score)
                .where(
                    ReferralLink.status == ReferralStatus.COMPLETED,
                    ReferralLink.completed_at >= start,
                    ReferralLink.completed_at < end,
                )
                .group_by(ReferralLink.referrer_id)
                .order_by(score.desc())
            )
        else:
            score = (
                func.sum(RewardPurchase.amount)
                if category is LeaderboardCategory.SPENDING
                else func.count(RewardPurchase.id)
            )
            stmt = (
                select(RewardPurchase.user_id, score)
                .where(RewardPurchase.purchased_at >= start, RewardPurchase.purchased_at < end)
                .group_by(RewardPurchase.user_id)
                .order_by(score.desc())
            )

        rows = (await self._db.execute(stmt)).all()
        return [(row[0], int(row[1])) for row in rows if row[1] and int(row[1]) > 0]

    async def _display_names(self, user_ids: set[UUID]) -> dict[UUID, str | None]:
        if not user_ids:
            return {}
        stmt = select(User.id, User.display_name).where(User.id.in_(list(user_ids)))
        return {row.id: row.display_name for row in (await self._db.execute(stmt)).all()}

    async def rank(
        self,
        category: LeaderboardCategory,
        period: LeaderboardPeriod,
        limit: int,
        *,
        requesting_user_id: UUID | None = None,
        now: datetime | None = None,
    ) -> RankedList:
        if limit <= 0:
            raise ValueError("Leaderboard limit must be positive")

        start, end = resolve_period_window(period, now or utcnow())
        ranked = dense_rank(await self._scores(category, start, end))
        entries = ranked[:limit]

        requesting_entry: RankedEntry | None = None
        if requesting_user_id is not None:
            requesting_entry = next((entry for entry in ranked if entry.user_id == requesting_user_id), None)

        names = await self._display_names(
            {entry.user_id for entry in entries} | ({requesting_entry.user_id} if requesting_entry else set())
        )
        for entry in entries:
            entry.display_name = names.get(entry.user_id)
        if requesting_entry is not None:
            requesting_entry.display_name = names.get(requesting_entry.user_id)

        return RankedList(
            category=category,
            period=period,
            period_start=start,
            period_end=end,
            entries=entries,
            requesting_user_entry=requesting_entry,
            total_participants=len(ranked),
        )


__all__ = [
    "LeaderboardCategory",
    "LeaderboardPeriod",
    "LeaderboardRankingAggregator",
    "RankedEntry",
    "RankedList",
    "dense_rank",
    "resolve_period_window",
]
