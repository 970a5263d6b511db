"""Reward catalog loader: bracket tiers, badges, spin wheel, milestones and store items."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Sequence

import tomllib
from loguru import logger

from storefront_rewards.core.exceptions import ConfigurationError
from storefront_rewards.models.rewards import RewardStoreItemType, SpinRewardType


class BadgeCategory(str, Enum):
    """Statistic a badge requirement is compared against."""

    PURCHASE_COUNT = "purchase_count"
    TOTAL_SPEND = "total_spend"
    REFERRAL_COUNT = "referral_count"
    ORDER_STREAK = "order_streak"
    TIME_OF_DAY = "time_of_day"
    SPECIAL = "special"


class MilestoneMetric(str, Enum):
    ORDERS = "orders"
    SPENDING = "spending"
    REFERRALS = "referrals"


class MilestoneRewardType(str, Enum):
    SPIN = "spin"
    POINTS = "points"


class StoreItemCategory(str, Enum):
    DISCOUNTS = "discounts"
    DELIVERIES = "deliveries"
    PRODUCTS = "products"
    SPECIAL = "special"


@dataclass(frozen=True, slots=True)
class BracketTier:
    """Inclusive spend range mapped to a point reward."""

    min_spend: int
    max_spend: int | None
    reward_value: int
    customizable: bool = False

    def contains(self, spend: int) -> bool:
        if spend < self.min_spend:
            return False
        return self.max_spend is None or spend <= self.max_spend


@dataclass(frozen=True, slots=True)
class BadgeDefinition:
    """Catalog badge. ``slug`` is the stable badge id."""

    slug: str
    name: str
    category: BadgeCategory
    requirement: int
    bonus_points: int = 0
    tier: str = "bronze"
    description: str = ""
    start_hour: int | None = None
    end_hour: int | None = None
    is_active: bool = True

    def covers_hour(self, hour: int) -> bool:
        """Return whether ``hour`` falls in ``[start_hour, end_hour)``, wrapping midnight."""

        if self.start_hour is None or self.end_hour is None:
            return False
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


@dataclass(frozen=True, slots=True)
class SpinRewardDefinition:
    slug: str
    name: str
    reward_type: SpinRewardType
    reward_value: int
    probability_weight: float
    is_active: bool = True
    description: str = ""


@dataclass(frozen=True, slots=True)
class MilestoneDefinition:
    slug: str
    name: str
    metric: MilestoneMetric
    threshold: int
    reward_type: MilestoneRewardType
    reward_value: int


@dataclass(frozen=True, slots=True)
class StoreItemDefinition:
    """Item offered in the points rewards store.

    ``value`` is a percentage for discounts, a delivery count for free
    deliveries and minor units for gift cards. ``stock`` of None means
    unlimited; otherwise it seeds the remaining-units row on first redemption.
    """

    slug: str
    name: str
    item_type: RewardStoreItemType
    category: StoreItemCategory
    points_cost: int
    value: int = 0
    stock: int | None = None
    is_featured: bool = False
    display_order: int = 0
    is_active: bool = True
    description: str = ""


@dataclass(frozen=True, slots=True)
class RewardCatalog:
    """Immutable, validated reward configuration shared by every component."""

    bracket_tiers: tuple[BracketTier, ...]
    badges: tuple[BadgeDefinition, ...]
    spin_rewards: tuple[SpinRewardDefinition, ...]
    milestones: tuple[MilestoneDefinition, ...] = ()
    store_items: tuple[StoreItemDefinition, ...] = ()

    @property
    def active_spin_rewards(self) -> tuple[SpinRewardDefinition, ...]:
        return tuple(reward for reward in self.spin_rewards if reward.is_active)

    def badge(self, slug: str) -> BadgeDefinition | None:
        for badge in self.badges:
            if badge.slug == slug:
                return badge
        return None

    def store_item(self, slug: str) -> StoreItemDefinition | None:
        for item in self.store_items:
            if item.slug == slug:
                return item
        return None


def match_tier(spend: int, tiers: Sequence[BracketTier]) -> BracketTier | None:
    """Return the tier whose inclusive range contains ``spend``."""

    for tier in tiers:
        if tier.contains(spend):
            return tier
    return None


def validate_bracket_tiers(tiers: Sequence[BracketTier]) -> None:
    """Ensure tiers start at zero, are contiguous and end with an open range."""

    if not tiers:
        raise ConfigurationError("Bracket tier table is empty")
    if tiers[0].min_spend != 0:
        raise ConfigurationError("Bracket tier table must start at 0")

    for index, tier in enumerate(tiers):
        if tier.reward_value < 0:
            raise ConfigurationError(f"Bracket tier {index} has a negative reward")
        is_last = index == len(tiers) - 1
        if tier.max_spend is None:
            if not is_last:
                raise ConfigurationError(f"Only the last bracket tier may be open-ended (tier {index})")
            continue
        if tier.max_spend < tier.min_spend:
            raise ConfigurationError(f"Bracket tier {index} has max_spend below min_spend")
        if is_last:
            raise ConfigurationError("Last bracket tier must have no max_spend")
        following = tiers[index + 1]
        if following.min_spend != tier.max_spend + 1:
            raise ConfigurationError(
                f"Bracket tiers {index} and {index + 1} overlap or leave a gap "
                f"({tier.max_spend} -> {following.min_spend})"
            )

    for tier in tiers[:-1]:
        if tier.customizable:
            raise ConfigurationError("Only the open-ended top tier may be customizable")


def validate_spin_rewards(rewards: Sequence[SpinRewardDefinition], *, tolerance: float = 0.01) -> None:
    """Ensure active spin weights are non-negative and sum to 100."""

    for reward in rewards:
        if reward.probability_weight < 0 or not math.isfinite(reward.probability_weight):
            raise ConfigurationError(f"Spin reward {reward.slug} has an invalid weight")
    active = [reward for reward in rewards if reward.is_active]
    if not active:
        raise ConfigurationError("Spin catalog has no active rewards")
    total = sum(reward.probability_weight for reward in active)
    if abs(total - 100.0) > tolerance:
        raise ConfigurationError(f"Spin reward weights sum to {total}, expected 100")


def validate_badges(badges: Sequence[BadgeDefinition]) -> None:
    seen: set[str] = set()
    for badge in badges:
        if badge.slug in seen:
            raise ConfigurationError(f"Duplicate badge slug {badge.slug}")
        seen.add(badge.slug)
        if badge.bonus_points < 0:
            raise ConfigurationError(f"Badge {badge.slug} has negative bonus points")
        if badge.category is BadgeCategory.TIME_OF_DAY:
            if badge.start_hour is None or badge.end_hour is None:
                raise ConfigurationError(f"Badge {badge.slug} needs start_hour and end_hour")
            if not (0 <= badge.start_hour <= 23 and 0 <= badge.end_hour <= 24):
                raise ConfigurationError(f"Badge {badge.slug} has an hour window out of range")
        elif badge.category is not BadgeCategory.SPECIAL and badge.requirement <= 0:
            raise ConfigurationError(f"Badge {badge.slug} needs a positive requirement")


def validate_milestones(milestones: Sequence[MilestoneDefinition]) -> None:
    seen: set[str] = set()
    for milestone in milestones:
        if milestone.slug in seen:
            raise ConfigurationError(f"Duplicate milestone slug {milestone.slug}")
        seen.add(milestone.slug)
        if milestone.threshold <= 0 or milestone.reward_value <= 0:
            raise ConfigurationError(f"Milestone {milestone.slug} needs positive threshold and reward")


def validate_store_items(items: Sequence[StoreItemDefinition]) -> None:
    seen: set[str] = set()
    for item in items:
        if item.slug in seen:
            raise ConfigurationError(f"Duplicate store item slug {item.slug}")
        seen.add(item.slug)
        if item.points_cost <= 0:
            raise ConfigurationError(f"Store item {item.slug} needs a positive points_cost")
        if item.stock is not None and item.stock < 0:
            raise ConfigurationError(f"Store item {item.slug} has negative stock")
        if item.item_type is RewardStoreItemType.DISCOUNT and not 0 < item.value <= 100:
            raise ConfigurationError(f"Discount item {item.slug} needs a percentage between 1 and 100")
        if item.item_type is RewardStoreItemType.FREE_DELIVERY and item.value <= 0:
            raise ConfigurationError(f"Free delivery item {item.slug} needs a positive delivery count")


def _optional_int(payload: Mapping[str, Any], key: str) -> int | None:
    value = payload.get(key)
    return None if value is None else int(value)


def _parse_tier(payload: Mapping[str, Any]) -> BracketTier:
    return BracketTier(
        min_spend=int(payload["min_spend"]),
        max_spend=_optional_int(payload, "max_spend"),
        reward_value=int(payload.get("reward_value", 0)),
        customizable=bool(payload.get("customizable", False)),
    )


def _parse_badge(payload: Mapping[str, Any]) -> BadgeDefinition:
    category = BadgeCategory(payload["category"])
    requirement = payload.get("requirement")
    if requirement is None:
        requirement = 1 if category in {BadgeCategory.TIME_OF_DAY, BadgeCategory.SPECIAL} else 0
    return BadgeDefinition(
        slug=str(payload["slug"]),
        name=str(payload["name"]),
        category=category,
        requirement=int(requirement),
        bonus_points=int(payload.get("bonus_points", 0)),
        tier=str(payload.get("tier", "bronze")),
        description=str(payload.get("description", "")),
        start_hour=_optional_int(payload, "start_hour"),
        end_hour=_optional_int(payload, "end_hour"),
        is_active=bool(payload.get("is_active", True)),
    )


def _parse_spin_reward(payload: Mapping[str, Any]) -> SpinRewardDefinition:
    return SpinRewardDefinition(
        slug=str(payload["slug"]),
        name=str(payload["name"]),
        reward_type=SpinRewardType(payload["reward_type"]),
        reward_value=int(payload["reward_value"]),
        probability_weight=float(payload["probability_weight"]),
        is_active=bool(payload.get("is_active", True)),
        description=str(payload.get("description", "")),
    )


def _parse_milestone(payload: Mapping[str, Any]) -> MilestoneDefinition:
    return MilestoneDefinition(
        slug=str(payload["slug"]),
        name=str(payload["name"]),
        metric=MilestoneMetric(payload["metric"]),
        threshold=int(payload["threshold"]),
        reward_type=MilestoneRewardType(payload["reward_type"]),
        reward_value=int(payload["reward_value"]),
    )


def _parse_store_item(payload: Mapping[str, Any]) -> StoreItemDefinition:
    return StoreItemDefinition(
        slug=str(payload["slug"]),
        name=str(payload["name"]),
        item_type=RewardStoreItemType(payload["item_type"]),
        category=StoreItemCategory(payload["category"]),
        points_cost=int(payload["points_cost"]),
        value=int(payload.get("value", 0)),
        stock=_optional_int(payload, "stock"),
        is_featured=bool(payload.get("is_featured", False)),
        display_order=int(payload.get("display_order", 0)),
        is_active=bool(payload.get("is_active", True)),
        description=str(payload.get("description", "")),
    )


def build_reward_catalog(data: Mapping[str, Any], *, spin_weight_tolerance: float = 0.01) -> RewardCatalog:
    """Parse and validate a catalog mapping (the decoded TOML document)."""

    try:
        tiers = tuple(_parse_tier(entry) for entry in data.get("bracket_tiers", []))
        badges = tuple(_parse_badge(entry) for entry in data.get("badges", []))
        spin_rewards = tuple(_parse_spin_reward(entry) for entry in data.get("spin_rewards", []))
        milestones = tuple(_parse_milestone(entry) for entry in data.get("milestones", []))
        store_items = tuple(_parse_store_item(entry) for entry in data.get("store_items", []))
    except KeyError as exc:
        raise ConfigurationError(f"Reward catalog entry is missing {exc.args[0]!r}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Reward catalog entry is malformed: {exc}") from exc

    validate_bracket_tiers(tiers)
    validate_badges(badges)
    validate_spin_rewards(spin_rewards, tolerance=spin_weight_tolerance)
    validate_milestones(milestones)
    validate_store_items(store_items)

    return RewardCatalog(
        bracket_tiers=tiers,
        badges=badges,
        spin_rewards=spin_rewards,
        milestones=milestones,
        store_items=store_items,
    )


def load_reward_catalog(config_path: Path, *, spin_weight_tolerance: float = 0.01) -> RewardCatalog:
    """Load the reward catalog from a TOML file."""

    if not config_path.exists():
        raise ConfigurationError(f"Reward catalog not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Reward catalog is not valid TOML: {exc}") from exc

    catalog = build_reward_catalog(data, spin_weight_tolerance=spin_weight_tolerance)
    logger.info(
        "Loaded reward catalog",
        path=str(config_path),
        tiers=len(catalog.bracket_tiers),
        badges=len(catalog.badges),
        spin_rewards=len(catalog.spin_rewards),
        milestones=len(catalog.milestones),
        store_items=len(catalog.store_items),
    )
    return catalog


__all__ = [
    "BadgeCategory",
    "BadgeDefinition",
    "BracketTier",
    "MilestoneDefinition",
    "MilestoneMetric",
    "MilestoneRewardType",
    "RewardCatalog",
    "SpinRewardDefinition",
    "StoreItemCategory",
    "StoreItemDefinition",
    "build_reward_catalog",
    "load_reward_catalog",
    "match_tier",
    "validate_bracket_tiers",
    "validate_spin_rewards",
    "validate_store_items",
]
