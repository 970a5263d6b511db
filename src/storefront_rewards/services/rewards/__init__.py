"""Reward engine service exports."""

from .badges import BadgeProgress, BadgeRuleEvaluator, NewlyAwardedBadge  # noqa: F401
from .brackets import BracketOutcome, CycleProgress, SpendBracketTracker  # noqa: F401
from .catalog import (  # noqa: F401
    BadgeCategory,
    BadgeDefinition,
    BracketTier,
    MilestoneDefinition,
    RewardCatalog,
    SpinRewardDefinition,
    StoreItemCategory,
    StoreItemDefinition,
    build_reward_catalog,
    load_reward_catalog,
    match_tier,
)
from .leaderboard import (  # noqa: F401
    LeaderboardCategory,
    LeaderboardPeriod,
    LeaderboardRankingAggregator,
    RankedEntry,
    RankedList,
    dense_rank,
)
from .ledger import (  # noqa: F401
    AccountSnapshot,
    LedgerStore,
    SpinAllowanceSnapshot,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from .milestones import MilestoneAward, MilestoneEvaluator  # noqa: F401
from .pipeline import PurchaseRewardPipeline, PurchaseRewardsOutcome  # noqa: F401
from .reconciliation import ReconciliationReport, reconcile_account, reconcile_all_accounts  # noqa: F401
from .referrals import ReferralConversionOutcome, ReferralConversionTracker  # noqa: F401
from .spin_wheel import SpinResult, SpinWheelPrizeSelector, select_spin_reward  # noqa: F401
from .store import RewardStore, StoreListing  # noqa: F401
