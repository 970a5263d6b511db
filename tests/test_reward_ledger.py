from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from storefront_rewards.core.exceptions import InsufficientPoints, InvalidAmount
from storefront_rewards.models.rewards import RewardCreditType, RewardTransactionKind, UserRewardAccount
from storefront_rewards.services.rewards import (
    LedgerStore,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    reconcile_account,
    reconcile_all_accounts,
)


NOW = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)


async def _credited_account(session, create_user, email: str, points: int):
    user = await create_user(session, email)
    ledger = LedgerStore(session)
    await ledger.credit_points(user.id, points)
    await ledger.append_log(
        user.id,
        RewardTransactionKind.BADGE_BONUS,
        amount=points,
        points_delta=points,
        description="seed",
    )
    await session.commit()
    return user, ledger


@pytest.mark.asyncio
async def test_redeem_points_checks_balance(session_factory, create_user) -> None:
    async with session_factory() as session:
        user, ledger = await _credited_account(session, create_user, "redeem@example.com", 1000)

        with pytest.raises(InsufficientPoints):
            await ledger.redeem_points(user.id, 1500)
        await session.rollback()

        entry = await ledger.redeem_points(user.id, 400, description="Checkout discount")
        await session.commit()

        assert entry.kind is RewardTransactionKind.REDEMPTION
        assert entry.points_delta == -400
        snapshot = await ledger.account_snapshot(user.id)
        assert snapshot.points_earned == 1000
        assert snapshot.points_redeemed == 400
        assert snapshot.available_points == 600

        with pytest.raises(InvalidAmount):
            await ledger.redeem_points(user.id, 0)


@pytest.mark.asyncio
async def test_transactions_paginate_with_cursor(session_factory, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "history@example.com")
        ledger = LedgerStore(session)
        for index in range(5):
            entry = await ledger.append_log(user.id, RewardTransactionKind.SPIN_WIN, amount=index)
            entry.created_at = NOW + timedelta(minutes=index)
        await ledger.append_log(user.id, RewardTransactionKind.REFERRAL_CAP_REACHED, amount=0)
        await session.commit()

        first_page, cursor = await ledger.list_transactions(
            user.id, limit=3, kinds=[RewardTransactionKind.SPIN_WIN]
        )
        assert [entry.amount for entry in first_page] == [4, 3, 2]
        assert cursor is not None

        encoded = encode_time_uuid_cursor(*cursor)
        second_page, next_cursor = await ledger.list_transactions(
            user.id, limit=3, cursor=decode_time_uuid_cursor(encoded), kinds=[RewardTransactionKind.SPIN_WIN]
        )
        assert [entry.amount for entry in second_page] == [1, 0]
        assert next_cursor is None


@pytest.mark.asyncio
async def test_credit_usage_respects_quantity_and_expiry(session_factory, create_user) -> None:
    async with session_factory() as session:
        user = await create_user(session, "credits@example.com")
        ledger = LedgerStore(session)
        credit = await ledger.issue_credit(
            user.id,
            RewardCreditType.FREE_DELIVERY,
            value=None,
            quantity=1,
            source="referral",
            ttl_days=30,
            now=NOW,
        )
        await session.commit()

        assert await ledger.use_credit(user.id, credit.id, now=NOW + timedelta(days=31)) is False
        assert await ledger.use_credit(user.id, credit.id, now=NOW + timedelta(days=1)) is True
        assert await ledger.use_credit(user.id, credit.id, now=NOW + timedelta(days=2)) is False
        await session.commit()

        assert await ledger.list_credits(user.id) == []
        assert len(await ledger.list_credits(user.id, include_spent=True)) == 1


@pytest.mark.asyncio
async def test_reconciliation_detects_drift(session_factory, create_user) -> None:
    async with session_factory() as session:
        user, ledger = await _credited_account(session, create_user, "audit@example.com", 2500)
        await ledger.redeem_points(user.id, 500)
        await session.commit()

        report = await reconcile_account(session, user.id)
        assert report.balanced is True
        assert report.logged_credits == 2500
        assert report.logged_debits == 500

        await session.execute(
            update(UserRewardAccount)
            .where(UserRewardAccount.user_id == user.id)
            .values(points_earned=UserRewardAccount.points_earned + 100)
        )
        await session.commit()

        reports = await reconcile_all_accounts(session)
        assert len(reports) == 1
        assert reports[0].balanced is False
        assert reports[0].earned_drift == 100
