"""Badge rule evaluation and awarding."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.models.rewards import RewardTransactionKind, UserBadgeAward
from storefront_rewards.observability.rewards import RewardsObservabilityStore, get_rewards_store

from .catalog import BadgeCategory, BadgeDefinition, RewardCatalog
from .ledger import LedgerStore, as_utc, utcnow
from .statistics import UserStatistics, load_user_statistics


@dataclass(slots=True)
class NewlyAwardedBadge:
    slug: str
    name: str
    tier: str
    bonus_points: int
    earned_at: datetime


@dataclass(slots=True)
class EarnedBadge:
    slug: str
    name: str
    tier: str
    earned_at: datetime


@dataclass(slots=True)
class BadgeProgressItem:
    slug: str
    name: str
    category: BadgeCategory
    current: int
    required: int
    percentage: int


@dataclass(slots=True)
class BadgeProgress:
    earned: list[EarnedBadge]
    upcoming: list[BadgeProgressItem]
    statistics: UserStatistics


def badge_current_value(badge: BadgeDefinition, stats: UserStatistics) -> int:
    """Map a badge category to the statistic it is measured against."""

    if badge.category is BadgeCategory.PURCHASE_COUNT:
        return stats.purchase_count
    if badge.category is BadgeCategory.TOTAL_SPEND:
        return stats.total_spend
    if badge.category is BadgeCategory.REFERRAL_COUNT:
        return stats.referral_count
    if badge.category is BadgeCategory.ORDER_STREAK:
        return stats.order_streak
    if badge.category is BadgeCategory.TIME_OF_DAY:
        return 1 if badge.covers_hour(stats.event_hour) else 0
    return 0


def badge_is_satisfied(badge: BadgeDefinition, stats: UserStatistics) -> bool:
    if not badge.is_active or badge.category is BadgeCategory.SPECIAL:
        return False
    return badge_current_value(badge, stats) >= badge.requirement


class BadgeRuleEvaluator:
    """Award every badge whose threshold the user's statistics meet."""

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

    def _streak_lookback_days(self) -> int:
        requirements = [
            badge.requirement
            for badge in self._catalog.badges
            if badge.category is BadgeCategory.ORDER_STREAK
        ]
        return max(requirements, default=1) + 1

    async def load_statistics(self, user_id: UUID, *, event_at: datetime | None = None) -> UserStatistics:
        return await load_user_statistics(
            self._db,
            user_id,
            event_at=event_at or utcnow(),
            streak_lookback_days=self._streak_lookback_days(),
        )

    async def _earned_slugs(self, user_id: UUID) -> set[str]:
        stmt = select(UserBadgeAward.badge_slug).where(UserBadgeAward.user_id == user_id)
        return set((await self._db.execute(stmt)).scalars().all())

    async def evaluate(self, user_id: UUID, *, event_at: datetime | None = None) -> list[NewlyAwardedBadge]:
        """Evaluate all auto-awarded badges and commit the new awards.

        Earned badges are skipped, and the unique (user, badge) key makes a
        concurrent evaluation for the same user award each badge once.
        """

        moment = as_utc(event_at) if event_at else utcnow()
        stats = await self.load_statistics(user_id, event_at=moment)
        earned = await self._earned_slugs(user_id)

        awarded: list[NewlyAwardedBadge] = []
        for badge in self._catalog.badges:
            if badge.slug in earned or not badge_is_satisfied(badge, stats):
                continue
            award = await self._award(user_id, badge, earned_at=moment)
            if award is not None:
                awarded.append(award)

        await self._db.commit()
        return awarded

    async def award_badge(self, user_id: UUID, slug: str, *, earned_at: datetime | None = None) -> NewlyAwardedBadge | None:
        """Grant a badge explicitly (SPECIAL badges). Returns None when already earned."""

        badge = self._catalog.badge(slug)
        if badge is None:
            raise ValueError(f"Unknown badge {slug}")
        award = await self._award(user_id, badge, earned_at=as_utc(earned_at) if earned_at else utcnow())
        await self._db.commit()
        return award

    async def _award(self, user_id: UUID, badge: BadgeDefinition, *, earned_at: datetime) -> NewlyAwardedBadge | None:
        inserted = await self._ledger.insert_if_absent(
            UserBadgeAward,
            {"user_id": user_id, "badge_slug": badge.slug, "earned_at": earned_at},
            index_elements=["user_id", "badge_slug"],
        )
        if not inserted:
            logger.info("Badge already awarded", user_id=str(user_id), badge=badge.slug)
            return None

        if badge.bonus_points > 0:
            await self._ledger.credit_points(user_id, badge.bonus_points)
            await self._ledger.append_log(
                user_id,
                RewardTransactionKind.BADGE_BONUS,
                amount=badge.bonus_points,
                points_delta=badge.bonus_points,
                description=f"Badge earned: {badge.name}",
                metadata={"badge": badge.slug, "tier": badge.tier},
            )

        self._store.record_badge_award(badge.slug)
        logger.info("Awarded badge", user_id=str(user_id), badge=badge.slug, bonus_points=badge.bonus_points)
        return NewlyAwardedBadge(
            slug=badge.slug,
            name=badge.name,
            tier=badge.tier,
            bonus_points=badge.bonus_points,
            earned_at=earned_at,
        )

    async def progress(self, user_id: UUID, *, limit: int = 3) -> BadgeProgress:
        stats = await self.load_statistics(user_id)
        stmt = select(UserBadgeAward).where(UserBadgeAward.user_id == user_id).order_by(UserBadgeAward.earned_at)
        awards = list((await self._db.execute(stmt)).scalars().all())
        earned_slugs = {award.badge_slug for award in awards}

        earned: list[EarnedBadge] = []
        for award in awards:
            badge = self._catalog.badge(award.badge_slug)
            earned.append(
                EarnedBadge(
                    slug=award.badge_slug,
                    name=badge.name if badge else award.badge_slug,
                    tier=badge.tier if badge else "unknown",
                    earned_at=as_utc(award.earned_at),
                )
            )

        upcoming: list[BadgeProgressItem] = []
        for badge in self._catalog.badges:
            if badge.slug in earned_slugs or not badge.is_active:
                continue
            if badge.category in {BadgeCategory.SPECIAL, BadgeCategory.TIME_OF_DAY}:
                continue
            current = badge_current_value(badge, stats)
            percentage = min(100, int(current * 100 / badge.requirement)) if badge.requirement else 0
            upcoming.append(
                BadgeProgressItem(
                    slug=badge.slug,
                    name=badge.name,
                    category=badge.category,
                    current=current,
                    required=badge.requirement,
                    percentage=percentage,
                )
            )
        upcoming.sort(key=lambda item: item.percentage, reverse=True)
        return BadgeProgress(earned=earned, upcoming=upcoming[: max(limit, 0)], statistics=stats)


__all__ = [
    "BadgeProgress",
    "BadgeProgressItem",
    "BadgeRuleEvaluator",
    "EarnedBadge",
    "NewlyAwardedBadge",
    "badge_current_value",
    "badge_is_satisfied",
]
