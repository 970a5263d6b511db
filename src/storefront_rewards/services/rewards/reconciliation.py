"""Recompute point balances from the audit log and report drift."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.models.rewards import UserRewardAccount

from .ledger import LedgerStore


@dataclass(slots=True)
class ReconciliationReport:
    user_id: UUID
    points_earned: int
    points_redeemed: int
    logged_credits: int
    logged_debits: int
    repaired_points: int = 0

    @property
    def earned_drift(self) -> int:
        return self.points_earned - self.logged_credits

    @property
    def redeemed_drift(self) -> int:
        return self.points_redeemed - self.logged_debits

    @property
    def balanced(self) -> bool:
        return self.earned_drift == 0 and self.redeemed_drift == 0

    @property
    def owed_points(self) -> int:
        """Logged credits that never reached ``points_earned``."""

        return max(0, -self.earned_drift)


async def reconcile_account(session: AsyncSession, user_id: UUID, *, repair: bool = False) -> ReconciliationReport:
    """Compare an account with its audit log.

    With ``repair`` the account is credited with any owed points, such as a
    bracket bonus whose credit failed after the log entry was written. Excess
    balances and redemption drift are reported but never adjusted.
    """

    ledger = LedgerStore(session)
    account = await ledger.account_snapshot(user_id)
    credits, debits = await ledger.sum_points_delta(user_id)
    report = ReconciliationReport(
        user_id=user_id,
        points_earned=account.points_earned,
        points_redeemed=account.points_redeemed,
        logged_credits=credits,
        logged_debits=debits,
    )
    if report.balanced:
        return report

    logger.warning(
        "Reward account drift detected",
        user_id=str(user_id),
        earned_drift=report.earned_drift,
        redeemed_drift=report.redeemed_drift,
    )
    if repair and report.owed_points:
        owed = report.owed_points
        restored = await ledger.restore_earned_points(
            user_id,
            observed_earned=report.points_earned,
            target_earned=report.logged_credits,
        )
        if restored:
            await session.commit()
            report.points_earned = report.logged_credits
            report.repaired_points = owed
            logger.info("Restored owed reward points", user_id=str(user_id), points=owed)
        else:
            await session.rollback()
            logger.warning("Reward account changed during repair; retry later", user_id=str(user_id))
    return report


async def reconcile_all_accounts(session: AsyncSession, *, repair: bool = False) -> list[ReconciliationReport]:
    user_ids = (await session.execute(select(UserRewardAccount.user_id))).scalars().all()
    return [await reconcile_account(session, user_id, repair=repair) for user_id in user_ids]


__all__ = ["ReconciliationReport", "reconcile_account", "reconcile_all_accounts"]
