"""SQLAlchemy models package."""

from .rewards import (  # noqa: F401
    ReferralLink,
    ReferralStatus,
    RewardCredit,
    RewardCreditType,
    RewardPurchase,
    RewardRedemption,
    RewardRedemptionStatus,
    RewardStoreItemType,
    RewardStoreStock,
    RewardTransactionKind,
    RewardTransactionLogEntry,
    SpinHistoryEntry,
    SpinRewardType,
    UserBadgeAward,
    UserMilestoneAward,
    UserRewardAccount,
    UserSpinAllowance,
)
from .user import User  # noqa: F401
