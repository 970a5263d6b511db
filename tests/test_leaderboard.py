from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from storefront_rewards.models.rewards import (
    ReferralLink,
    ReferralStatus,
    RewardPurchase,
    UserRewardAccount,
)
from storefront_rewards.services.rewards import (
    LeaderboardCategory,
    LeaderboardPeriod,
    LeaderboardRankingAggregator,
    dense_rank,
)
from storefront_rewards.services.rewards.leaderboard import resolve_period_window


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def test_dense_rank_shares_ranks_on_ties() -> None:
    a, b, c, d = uuid4(), uuid4(), uuid4(), uuid4()

    ranked = dense_rank([(d, 100), (b, 300), (a, 500), (c, 300)])

    assert [(entry.user_id, entry.rank) for entry in ranked] == [(a, 1), (b, 2), (c, 2), (d, 3)]


def test_period_windows() -> None:
    weekly_start, weekly_end = resolve_period_window(LeaderboardPeriod.WEEKLY, NOW)
    monthly_start, _ = resolve_period_window(LeaderboardPeriod.MONTHLY, NOW)
    all_time_start, _ = resolve_period_window(LeaderboardPeriod.ALL_TIME, NOW)

    assert weekly_end == NOW
    assert weekly_start == NOW - timedelta(days=7)
    assert monthly_start == datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert all_time_start.year == 1970


async def _purchase(session, user_id, amount: int, *, days_ago: int = 1) -> None:
    session.add(RewardPurchase(user_id=user_id, amount=amount, purchased_at=NOW - timedelta(days=days_ago)))


@pytest.mark.asyncio
async def test_spending_leaderboard_ranks_with_ties(session_factory, create_user) -> None:
    async with session_factory() as session:
        alice = await create_user(session, "alice@example.com", "Alice")
        bob = await create_user(session, "bob@example.com", "Bob")
        cara = await create_user(session, "cara@example.com", "Cara")
        idle = await create_user(session, "idle@example.com", "Idle")
        session.add(UserRewardAccount(user_id=idle.id))
        await _purchase(session, alice.id, 500)
        await _purchase(session, bob.id, 200)
        await _purchase(session, bob.id, 100, days_ago=2)
        await _purchase(session, cara.id, 300)
        await session.commit()

        board = await LeaderboardRankingAggregator(session).rank(
            LeaderboardCategory.SPENDING, LeaderboardPeriod.WEEKLY, 10, now=NOW
        )

        assert [(entry.user_id, entry.score, entry.rank) for entry in board.entries[:1]] == [(alice.id, 500, 1)]
        assert sorted(entry.rank for entry in board.entries) == [1, 2, 2]
        assert {entry.user_id for entry in board.entries} == {alice.id, bob.id, cara.id}
        assert board.entries[0].display_name == "Alice"
        assert board.total_participants == 3


@pytest.mark.asyncio
async def test_requesting_user_outside_limit(session_factory, create_user) -> None:
    async with session_factory() as session:
        leader = await create_user(session, "leader@example.com")
        runner = await create_user(session, "runner@example.com", "Runner")
        await _purchase(session, leader.id, 900)
        await _purchase(session, runner.id, 400)
        await session.commit()

        board = await LeaderboardRankingAggregator(session).rank(
            LeaderboardCategory.SPENDING,
            LeaderboardPeriod.WEEKLY,
            1,
            requesting_user_id=runner.id,
            now=NOW,
        )

        assert [entry.user_id for entry in board.entries] == [leader.id]
        assert board.requesting_user_entry is not None
        assert board.requesting_user_entry.rank == 2
        assert board.requesting_user_entry.display_name == "Runner"


@pytest.mark.asyncio
async def test_period_excludes_older_purchases(session_factory, create_user) -> None:
    async with session_factory() as session:
        recent = await create_user(session, "recent@example.com")
        older = await create_user(session, "older@example.com")
        await _purchase(session, recent.id, 100, days_ago=2)
        await _purchase(session, older.id, 5000, days_ago=10)
        await session.commit()

        aggregator = LeaderboardRankingAggregator(session)
        weekly = await aggregator.rank(LeaderboardCategory.ORDERS, LeaderboardPeriod.WEEKLY, 10, now=NOW)
        monthly = await aggregator.rank(LeaderboardCategory.SPENDING, LeaderboardPeriod.MONTHLY, 10, now=NOW)

        assert [entry.user_id for entry in weekly.entries] == [recent.id]
        assert weekly.entries[0].score == 1
        assert [entry.user_id for entry in monthly.entries] == [older.id, recent.id]


@pytest.mark.asyncio
async def test_referral_and_points_categories(session_factory, create_user) -> None:
    async with session_factory() as session:
        host = await create_user(session, "host@example.com")
        guest = await create_user(session, "guest@example.com")
        pending_guest = await create_user(session, "pending@example.com")
        session.add_all(
            [
                ReferralLink(
                    referrer_id=host.id,
                    referee_id=guest.id,
                    status=ReferralStatus.COMPLETED,
                    created_at=NOW - timedelta(days=3),
                    completed_at=NOW - timedelta(days=1),
                ),
                ReferralLink(
                    referrer_id=guest.id,
                    referee_id=pending_guest.id,
                    status=ReferralStatus.PENDING,
                    created_at=NOW - timedelta(days=1),
                ),
                UserRewardAccount(user_id=guest.id, points_earned=7000),
                UserRewardAccount(user_id=host.id, points_earned=0),
            ]
        )
        await session.commit()

        aggregator = LeaderboardRankingAggregator(session)
        referrals = await aggregator.rank(LeaderboardCategory.REFERRALS, LeaderboardPeriod.MONTHLY, 10, now=NOW)
        points = await aggregator.rank(LeaderboardCategory.POINTS, LeaderboardPeriod.ALL_TIME, 10, now=NOW)

        assert [(entry.user_id, entry.score) for entry in referrals.entries] == [(host.id, 1)]
        assert [(entry.user_id, entry.score) for entry in points.entries] == [(guest.id, 7000)]


@pytest.mark.asyncio
async def test_non_positive_limit_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await LeaderboardRankingAggregator(session).rank(
                LeaderboardCategory.SPENDING, LeaderboardPeriod.WEEKLY, 0, now=NOW
            )
