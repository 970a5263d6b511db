"""Reward engine ledger models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from storefront_rewards.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferralStatus(str, Enum):
    """Lifecycle statuses for referral links."""

    PENDING = "pending"
    COMPLETED = "completed"


class SpinRewardType(str, Enum):
    """Prize kinds that can be won on the spin wheel."""

    POINTS = "points"
    FREE_DELIVERY = "free_delivery"
    DISCOUNT = "discount"


class RewardCreditType(str, Enum):
    """Redeemable non-point credits."""

    FREE_DELIVERY = "free_delivery"
    DISCOUNT = "discount"


class RewardStoreItemType(str, Enum):
    """What a rewards store item delivers once redeemed."""

    DISCOUNT = "discount"
    FREE_DELIVERY = "free_delivery"
    GIFT_CARD = "gift_card"
    PRODUCT = "product"


class RewardRedemptionStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"


class RewardTransactionKind(str, Enum):
    """Audit log entry kinds."""

    BRACKET_BONUS = "bracket_bonus"
    BADGE_BONUS = "badge_bonus"
    SPIN_WIN = "spin_win"
    REFERRAL_BONUS = "referral_bonus"
    REFERRAL_CAP_REACHED = "referral_cap_reached"
    MILESTONE_BONUS = "milestone_bonus"
    REDEMPTION = "redemption"


class UserRewardAccount(Base):
    """Per-user spend, purchase and point counters."""

    __tablename__ = "reward_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_reward_accounts_user_id"),
        CheckConstraint("points_earned >= points_redeemed", name="ck_reward_accounts_points_available"),
        CheckConstraint("current_cycle_receipts >= 0", name="ck_reward_accounts_cycle_receipts"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    total_spend = Column(BigInteger, nullable=False, default=0, server_default="0")
    purchase_count = Column(Integer, nullable=False, default=0, server_default="0")
    points_earned = Column(BigInteger, nullable=False, default=0, server_default="0")
    points_redeemed = Column(BigInteger, nullable=False, default=0, server_default="0")
    current_cycle_spend = Column(BigInteger, nullable=False, default=0, server_default="0")
    current_cycle_receipts = Column(Integer, nullable=False, default=0, server_default="0")
    # Bumped on every cycle mutation; guards the increment-and-check unit.
    cycle_version = Column(Integer, nullable=False, default=0, server_default="0")
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class RewardPurchase(Base):
    """Purchases recorded against the bracket tracker."""

    __tablename__ = "reward_purchases"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_reward_purchases_order_id"),
        Index("ix_reward_purchases_user_purchased_at", "user_id", "purchased_at"),
        Index("ix_reward_purchases_purchased_at", "purchased_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String, nullable=True)
    amount = Column(BigInteger, nullable=False)
    purchased_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UserBadgeAward(Base):
    """Badge earned by a user. At most one row per (user, badge)."""

    __tablename__ = "user_badge_awards"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_slug", name="uq_user_badge_awards_user_badge"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_slug = Column(String, nullable=False)
    earned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ReferralLink(Base):
    """Referrer/referee pairing created at referee signup."""

    __tablename__ = "referral_links"
    __table_args__ = (
        UniqueConstraint("referee_id", name="uq_referral_links_referee_id"),
        Index("ix_referral_links_referrer_status", "referrer_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    referee_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        SqlEnum(ReferralStatus, name="referral_link_status"),
        nullable=False,
        default=ReferralStatus.PENDING,
    )
    reward_issued = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class UserSpinAllowance(Base):
    """Spin wheel balance and lifetime aggregates."""

    __tablename__ = "user_spin_allowances"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_spin_allowances_user_id"),
        CheckConstraint("spins_available >= 0", name="ck_user_spin_allowances_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    spins_available = Column(Integer, nullable=False, default=0, server_default="0")
    total_spins_granted = Column(Integer, nullable=False, default=0, server_default="0")
    total_spins_consumed = Column(Integer, nullable=False, default=0, server_default="0")
    total_winnings_value = Column(BigInteger, nullable=False, default=0, server_default="0")
    last_spin_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SpinHistoryEntry(Base):
    """One row per spin, including the raw draw for audit."""

    __tablename__ = "spin_history"
    __table_args__ = (
        Index("ix_spin_history_user_created_at", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reward_slug = Column(String, nullable=False)
    reward_name = Column(String, nullable=False)
    reward_type = Column(SqlEnum(SpinRewardType, name="spin_reward_type"), nullable=False)
    reward_value = Column(BigInteger, nullable=False)
    draw = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RewardCredit(Base):
    """Redeemable credits issued by spins and referral payouts."""

    __tablename__ = "reward_credits"
    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="ck_reward_credits_quantity"),
        Index("ix_reward_credits_user_type", "user_id", "credit_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    credit_type = Column(SqlEnum(RewardCreditType, name="reward_credit_type"), nullable=False)
    # Minor units for FREE_DELIVERY (None covers the full fee), percent for DISCOUNT.
    value = Column(BigInteger, nullable=True)
    quantity_remaining = Column(Integer, nullable=False, default=1, server_default="1")
    source = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserMilestoneAward(Base):
    """Milestone reached by a user. At most one row per (user, milestone)."""

    __tablename__ = "user_milestone_awards"
    __table_args__ = (
        UniqueConstraint("user_id", "milestone_slug", name="uq_user_milestone_awards_user_milestone"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    milestone_slug = Column(String, nullable=False)
    awarded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RewardTransactionLogEntry(Base):
    """Append-only audit trail; never updated or deleted."""

    __tablename__ = "reward_transaction_log"
    __table_args__ = (
        Index("ix_reward_transaction_log_user_created_at", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    kind = Column(SqlEnum(RewardTransactionKind, name="reward_transaction_kind"), nullable=False)
    amount = Column(BigInteger, nullable=False)
    points_delta = Column(BigInteger, nullable=False, default=0, server_default="0")
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RewardStoreStock(Base):
    """Remaining units of a stock-limited rewards store item."""

    __tablename__ = "reward_store_stock"
    __table_args__ = (
        UniqueConstraint("item_slug", name="uq_reward_store_stock_item_slug"),
        CheckConstraint("remaining >= 0", name="ck_reward_store_stock_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    item_slug = Column(String, nullable=False)
    remaining = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class RewardRedemption(Base):
    """Points spent on a rewards store item."""

    __tablename__ = "reward_redemptions"
    __table_args__ = (
        UniqueConstraint("code", name="uq_reward_redemptions_code"),
        Index("ix_reward_redemptions_user_created_at", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    item_slug = Column(String, nullable=False)
    item_type = Column(SqlEnum(RewardStoreItemType, name="reward_store_item_type"), nullable=False)
    points_spent = Column(BigInteger, nullable=False)
    status = Column(
        SqlEnum(RewardRedemptionStatus, name="reward_redemption_status"),
        nullable=False,
        default=RewardRedemptionStatus.PENDING,
    )
    code = Column(String, nullable=True)
    credit_id = Column(UUID(as_uuid=True), ForeignKey("reward_credits.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
