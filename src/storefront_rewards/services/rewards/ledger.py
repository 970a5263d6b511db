"""Durable per-user reward counters and the append-only audit log."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence, Tuple
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.core.exceptions import InsufficientPoints, InvalidAmount, NoSpinsAvailable
from storefront_rewards.models.rewards import (
    ReferralLink,
    ReferralStatus,
    RewardCredit,
    RewardCreditType,
    RewardPurchase,
    RewardRedemption,
    RewardStoreStock,
    RewardTransactionKind,
    RewardTransactionLogEntry,
    SpinHistoryEntry,
    UserRewardAccount,
    UserSpinAllowance,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_positive_amount(value: Any) -> bool:
    """Return True for integers greater than zero (bools rejected)."""

    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass(slots=True)
class CycleState:
    """Bracket cycle counters as read before an optimistic update."""

    user_id: UUID
    receipts: int
    spend: int
    version: int


@dataclass(slots=True)
class CycleAdvance:
    """Result of a successful version-checked cycle update."""

    completed: bool
    cycle_receipts: int
    cycle_spend: int
    purchase_count: int
    total_spend: int


@dataclass(slots=True)
class AccountSnapshot:
    """Serializable reward account overview."""

    user_id: UUID
    total_spend: int
    purchase_count: int
    points_earned: int
    points_redeemed: int
    available_points: int
    current_cycle_receipts: int
    current_cycle_spend: int
    last_purchase_at: datetime | None


@dataclass(slots=True)
class SpinAllowanceSnapshot:
    user_id: UUID
    spins_available: int
    total_spins_granted: int
    total_spins_consumed: int
    total_winnings_value: int
    last_spin_at: datetime | None
    recent_spins: list[SpinHistoryEntry]


class LedgerStore:
    """Repository over the reward tables.

    Every mutation that guards an invariant is a single conditional UPDATE or
    an insert-if-absent on a unique key, so two sessions racing on the same
    user cannot both succeed. Methods never commit; callers own the
    transaction boundary.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    @property
    def session(self) -> AsyncSession:
        return self._db

    async def insert_if_absent(
        self,
        model: type,
        values: dict[str, Any],
        *,
        index_elements: Sequence[str],
    ) -> bool:
        """Insert a row unless it collides with ``index_elements``.

        Returns True when the row was inserted by this call.
        """

        dialect_name = self._db.get_bind().dialect.name
        if dialect_name == "postgresql":
            insert_fn = postgresql.insert
        elif dialect_name == "sqlite":
            insert_fn = sqlite.insert
        else:  # pragma: no cover - deployment guard
            raise RuntimeError(f"Unsupported database dialect for reward ledger: {dialect_name}")

        payload = dict(values)
        payload.setdefault("id", uuid4())
        stmt = (
            insert_fn(model)
            .values(**payload)
            .on_conflict_do_nothing(index_elements=list(index_elements))
            .returning(model.id)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    # Accounts -----------------------------------------------------------------

    async def ensure_account(self, user_id: UUID) -> None:
        """Create the reward account for ``user_id`` if it does not exist."""

        created = await self.insert_if_absent(
            UserRewardAccount,
            {
                "user_id": user_id,
                "total_spend": 0,
                "purchase_count": 0,
                "points_earned": 0,
                "points_redeemed": 0,
                "current_cycle_spend": 0,
                "current_cycle_receipts": 0,
                "cycle_version": 0,
            },
            index_elements=["user_id"],
        )
        if created:
            logger.info("Created reward account", user_id=str(user_id))

    async def read_cycle_state(self, user_id: UUID) -> CycleState | None:
        stmt = select(
            UserRewardAccount.current_cycle_receipts,
            UserRewardAccount.current_cycle_spend,
            UserRewardAccount.cycle_version,
        ).where(UserRewardAccount.user_id == user_id)
        row = (await self._db.execute(stmt)).first()
        if row is None:
            return None
        return CycleState(
            user_id=user_id,
            receipts=row.current_cycle_receipts,
            spend=row.current_cycle_spend,
            version=row.cycle_version,
        )

    async def try_advance_cycle(
        self,
        state: CycleState,
        amount: int,
        *,
        cycle_size: int,
        now: datetime,
    ) -> CycleAdvance | None:
        """Apply one purchase to the cycle if nobody else moved it since ``state`` was read.

        Returns None when the version check fails.
        """

        next_receipts = state.receipts + 1
        next_spend = state.spend + amount
        completed = next_receipts >= cycle_size
        stmt = (
            update(UserRewardAccount)
            .where(
                UserRewardAccount.user_id == state.user_id,
                UserRewardAccount.cycle_version == state.version,
            )
            .values(
                current_cycle_receipts=0 if completed else next_receipts,
                current_cycle_spend=0 if completed else next_spend,
                cycle_version=UserRewardAccount.cycle_version + 1,
                total_spend=UserRewardAccount.total_spend + amount,
                purchase_count=UserRewardAccount.purchase_count + 1,
                last_purchase_at=now,
            )
            .returning(UserRewardAccount.purchase_count, UserRewardAccount.total_spend)
            .execution_options(synchronize_session=False)
        )
        row = (await self._db.execute(stmt)).first()
        if row is None:
            return None
        return CycleAdvance(
            completed=completed,
            cycle_receipts=next_receipts,
            cycle_spend=next_spend,
            purchase_count=row.purchase_count,
            total_spend=row.total_spend,
        )

    async def record_purchase_row(
        self,
        user_id: UUID,
        amount: int,
        *,
        order_id: str | None,
        purchased_at: datetime,
    ) -> bool:
        """Store the purchase; False when ``order_id`` was already recorded."""

        values = {
            "user_id": user_id,
            "order_id": order_id,
            "amount": amount,
            "purchased_at": purchased_at,
        }
        if order_id is None:
            self._db.add(RewardPurchase(**values))
            await self._db.flush()
            return True
        return await self.insert_if_absent(RewardPurchase, values, index_elements=["order_id"])

    async def credit_points(self, user_id: UUID, points: int) -> None:
        if points <= 0:
            raise InvalidAmount(points)
        await self.ensure_account(user_id)
        stmt = (
            update(UserRewardAccount)
            .where(UserRewardAccount.user_id == user_id)
            .values(points_earned=UserRewardAccount.points_earned + points)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def restore_earned_points(self, user_id: UUID, *, observed_earned: int, target_earned: int) -> bool:
        """Raise ``points_earned`` to ``target_earned`` if nobody changed it since it was observed."""

        if target_earned <= observed_earned:
            raise InvalidAmount(target_earned - observed_earned)
        stmt = (
            update(UserRewardAccount)
            .where(
                UserRewardAccount.user_id == user_id,
                UserRewardAccount.points_earned == observed_earned,
            )
            .values(points_earned=target_earned)
            .returning(UserRewardAccount.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._db.execute(stmt)).first() is not None

    async def redeem_points(
        self,
        user_id: UUID,
        points: int,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RewardTransactionLogEntry:
        """Deduct ``points`` from the available balance or raise InsufficientPoints."""

        if not is_positive_amount(points):
            raise InvalidAmount(points)
        stmt = (
            update(UserRewardAccount)
            .where(
                UserRewardAccount.user_id == user_id,
                UserRewardAccount.points_earned - UserRewardAccount.points_redeemed >= points,
            )
            .values(points_redeemed=UserRewardAccount.points_redeemed + points)
            .returning(UserRewardAccount.id)
            .execution_options(synchronize_session=False)
        )
        if (await self._db.execute(stmt)).first() is None:
            raise InsufficientPoints(user_id, points)

        entry = await self.append_log(
            user_id,
            RewardTransactionKind.REDEMPTION,
            amount=points,
            points_delta=-points,
            description=description or "Points redeemed",
            metadata=metadata,
        )
        logger.info("Redeemed reward points", user_id=str(user_id), points=points)
        return entry

    async def account_snapshot(self, user_id: UUID) -> AccountSnapshot:
        stmt = select(UserRewardAccount).where(UserRewardAccount.user_id == user_id).execution_options(
            populate_existing=True
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            return AccountSnapshot(
                user_id=user_id,
                total_spend=0,
                purchase_count=0,
                points_earned=0,
                points_redeemed=0,
                available_points=0,
                current_cycle_receipts=0,
                current_cycle_spend=0,
                last_purchase_at=None,
            )
        return AccountSnapshot(
            user_id=user_id,
            total_spend=account.total_spend,
            purchase_count=account.purchase_count,
            points_earned=account.points_earned,
            points_redeemed=account.points_redeemed,
            available_points=account.points_earned - account.points_redeemed,
            current_cycle_receipts=account.current_cycle_receipts,
            current_cycle_spend=account.current_cycle_spend,
            last_purchase_at=as_utc(account.last_purchase_at) if account.last_purchase_at else None,
        )

    # Audit log ----------------------------------------------------------------

    async def append_log(
        self,
        user_id: UUID,
        kind: RewardTransactionKind,
        *,
        amount: int,
        points_delta: int = 0,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RewardTransactionLogEntry:
        entry = RewardTransactionLogEntry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            points_delta=points_delta,
            description=description,
            metadata_json=metadata or {},
            created_at=utcnow(),
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def list_transactions(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        kinds: Sequence[RewardTransactionKind] | None = None,
    ) -> tuple[list[RewardTransactionLogEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of audit entries for a user."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(RewardTransactionLogEntry)
            .where(RewardTransactionLogEntry.user_id == user_id)
            .order_by(RewardTransactionLogEntry.created_at.desc(), RewardTransactionLogEntry.id.desc())
        )
        if kinds:
            stmt = stmt.where(RewardTransactionLogEntry.kind.in_(list(kinds)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    RewardTransactionLogEntry.created_at < cursor_time,
                    and_(
                        RewardTransactionLogEntry.created_at == cursor_time,
                        RewardTransactionLogEntry.id < cursor_id,
                    ),
                )
            )

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._db.execute(stmt)
        rows = list(result.scalars().all())
        has_more = len(rows) > bounded_limit
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if has_more and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)

        return entries, next_cursor

    async def sum_points_delta(self, user_id: UUID) -> tuple[int, int]:
        """Return (credited, debited) point totals recorded in the audit log."""

        delta = RewardTransactionLogEntry.points_delta
        credited = func.coalesce(func.sum(case((delta > 0, delta), else_=0)), 0)
        debited = func.coalesce(func.sum(case((delta < 0, delta), else_=0)), 0)
        stmt = select(credited, debited).where(RewardTransactionLogEntry.user_id == user_id)
        row = (await self._db.execute(stmt)).one()
        return int(row[0]), -int(row[1])

    # Spin allowances ----------------------------------------------------------

    async def ensure_spin_allowance(self, user_id: UUID) -> None:
        await self.insert_if_absent(
            UserSpinAllowance,
            {
                "user_id": user_id,
                "spins_available": 0,
                "total_spins_granted": 0,
                "total_spins_consumed": 0,
                "total_winnings_value": 0,
            },
            index_elements=["user_id"],
        )

    async def grant_spins(self, user_id: UUID, amount: int, *, reason: str) -> int:
        """Add spins and return the new available count."""

        if not is_positive_amount(amount):
            raise InvalidAmount(amount)
        await self.ensure_spin_allowance(user_id)
        stmt = (
            update(UserSpinAllowance)
            .where(UserSpinAllowance.user_id == user_id)
            .values(
                spins_available=UserSpinAllowance.spins_available + amount,
                total_spins_granted=UserSpinAllowance.total_spins_granted + amount,
            )
            .returning(UserSpinAllowance.spins_available)
            .execution_options(synchronize_session=False)
        )
        spins_available = (await self._db.execute(stmt)).scalar_one()
        logger.info("Granted spins", user_id=str(user_id), amount=amount, reason=reason)
        return spins_available

    async def consume_spin(self, user_id: UUID, now: datetime) -> int:
        """Atomically take one spin; raise NoSpinsAvailable when none remain."""

        stmt = (
            update(UserSpinAllowance)
            .where(UserSpinAllowance.user_id == user_id, UserSpinAllowance.spins_available > 0)
            .values(
                spins_available=UserSpinAllowance.spins_available - 1,
                total_spins_consumed=UserSpinAllowance.total_spins_consumed + 1,
                last_spin_at=now,
            )
            .returning(UserSpinAllowance.spins_available)
            .execution_options(synchronize_session=False)
        )
        remaining = (await self._db.execute(stmt)).scalar_one_or_none()
        if remaining is None:
            raise NoSpinsAvailable(user_id)
        return remaining

    async def record_spin_winnings(self, user_id: UUID, value: int) -> None:
        stmt = (
            update(UserSpinAllowance)
            .where(UserSpinAllowance.user_id == user_id)
            .values(total_winnings_value=UserSpinAllowance.total_winnings_value + value)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def spin_snapshot(self, user_id: UUID, *, history_limit: int = 10) -> SpinAllowanceSnapshot:
        stmt = select(UserSpinAllowance).where(UserSpinAllowance.user_id == user_id).execution_options(
            populate_existing=True
        )
        allowance = (await self._db.execute(stmt)).scalar_one_or_none()
        history_stmt = (
            select(SpinHistoryEntry)
            .where(SpinHistoryEntry.user_id == user_id)
            .order_by(SpinHistoryEntry.created_at.desc(), SpinHistoryEntry.id.desc())
            .limit(max(history_limit, 0))
        )
        recent = list((await self._db.execute(history_stmt)).scalars().all())
        if allowance is None:
            return SpinAllowanceSnapshot(
                user_id=user_id,
                spins_available=0,
                total_spins_granted=0,
                total_spins_consumed=0,
                total_winnings_value=0,
                last_spin_at=None,
                recent_spins=recent,
            )
        return SpinAllowanceSnapshot(
            user_id=user_id,
            spins_available=allowance.spins_available,
            total_spins_granted=allowance.total_spins_granted,
            total_spins_consumed=allowance.total_spins_consumed,
            total_winnings_value=allowance.total_winnings_value,
            last_spin_at=as_utc(allowance.last_spin_at) if allowance.last_spin_at else None,
            recent_spins=recent,
        )

    # Credits ------------------------------------------------------------------

    async def issue_credit(
        self,
        user_id: UUID,
        credit_type: RewardCreditType,
        *,
        value: int | None,
        quantity: int,
        source: str,
        ttl_days: int | None,
        now: datetime,
    ) -> RewardCredit:
        if not is_positive_amount(quantity):
            raise InvalidAmount(quantity)
        expires_at = now + timedelta(days=ttl_days) if ttl_days else None
        credit = RewardCredit(
            user_id=user_id,
            credit_type=credit_type,
            value=value,
            quantity_remaining=quantity,
            source=source,
            expires_at=expires_at,
            created_at=now,
        )
        self._db.add(credit)
        await self._db.flush()
        logger.info(
            "Issued reward credit",
            user_id=str(user_id),
            credit_type=credit_type.value,
            quantity=quantity,
            source=source,
        )
        return credit

    async def use_credit(self, user_id: UUID, credit_id: UUID, *, now: datetime | None = None) -> bool:
        """Consume one unit of an unexpired credit; False when nothing is left."""

        moment = now or utcnow()
        stmt = (
            update(RewardCredit)
            .where(
                RewardCredit.id == credit_id,
                RewardCredit.user_id == user_id,
                RewardCredit.quantity_remaining > 0,
                or_(RewardCredit.expires_at.is_(None), RewardCredit.expires_at > moment),
            )
            .values(quantity_remaining=RewardCredit.quantity_remaining - 1, last_used_at=moment)
            .returning(RewardCredit.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._db.execute(stmt)).first() is not None

    async def list_credits(self, user_id: UUID, *, include_spent: bool = False) -> list[RewardCredit]:
        stmt = (
            select(RewardCredit)
            .where(RewardCredit.user_id == user_id)
            .order_by(RewardCredit.created_at.desc())
            .execution_options(populate_existing=True)
        )
        if not include_spent:
            stmt = stmt.where(RewardCredit.quantity_remaining > 0)
        return list((await self._db.execute(stmt)).scalars().all())

    # Rewards store ------------------------------------------------------------

    async def reserve_store_stock(self, item_slug: str, *, initial_stock: int) -> int | None:
        """Take one unit of a stock-limited item; None when it is sold out.

        The stock row is seeded from the catalog the first time the item is
        redeemed and only ever decremented afterwards.
        """

        await self.insert_if_absent(
            RewardStoreStock,
            {"item_slug": item_slug, "remaining": initial_stock},
            index_elements=["item_slug"],
        )
        stmt = (
            update(RewardStoreStock)
            .where(RewardStoreStock.item_slug == item_slug, RewardStoreStock.remaining > 0)
            .values(remaining=RewardStoreStock.remaining - 1)
            .returning(RewardStoreStock.remaining)
            .execution_options(synchronize_session=False)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def store_stock_levels(self, item_slugs: Sequence[str]) -> dict[str, int]:
        if not item_slugs:
            return {}
        stmt = select(RewardStoreStock.item_slug, RewardStoreStock.remaining).where(
            RewardStoreStock.item_slug.in_(list(item_slugs))
        )
        return {row.item_slug: row.remaining for row in (await self._db.execute(stmt)).all()}

    async def list_redemptions(self, user_id: UUID, *, limit: int = 50) -> list[RewardRedemption]:
        stmt = (
            select(RewardRedemption)
            .where(RewardRedemption.user_id == user_id)
            .order_by(RewardRedemption.created_at.desc(), RewardRedemption.id.desc())
            .limit(limit)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    # Referrals ----------------------------------------------------------------

    async def complete_referral_link(self, link_id: UUID, now: datetime) -> bool:
        """Move a link from PENDING to COMPLETED; False when it already moved."""

        stmt = (
            update(ReferralLink)
            .where(ReferralLink.id == link_id, ReferralLink.status == ReferralStatus.PENDING)
            .values(status=ReferralStatus.COMPLETED, completed_at=now)
            .returning(ReferralLink.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._db.execute(stmt)).first() is not None

    async def mark_referral_rewarded(self, link_id: UUID) -> None:
        stmt = (
            update(ReferralLink)
            .where(ReferralLink.id == link_id)
            .values(reward_issued=True)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def count_completed_referrals(self, referrer_id: UUID, *, exclude_link_id: UUID | None = None) -> int:
        stmt = select(func.count(ReferralLink.id)).where(
            ReferralLink.referrer_id == referrer_id,
            ReferralLink.status == ReferralStatus.COMPLETED,
        )
        if exclude_link_id is not None:
            stmt = stmt.where(ReferralLink.id != exclude_link_id)
        return int((await self._db.execute(stmt)).scalar_one())


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "AccountSnapshot",
    "CycleAdvance",
    "CycleState",
    "LedgerStore",
    "SpinAllowanceSnapshot",
    "as_utc",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
    "is_positive_amount",
    "utcnow",
]
