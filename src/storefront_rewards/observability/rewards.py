from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RewardsSnapshot:
    brackets: Dict[str, int]
    badges: Dict[str, int]
    spins: Dict[str, int]
    referrals: Dict[str, int]
    milestones: Dict[str, int]
    pipeline: Dict[str, int]
    store: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "brackets": dict(self.brackets),
            "badges": dict(self.badges),
            "spins": dict(self.spins),
            "referrals": dict(self.referrals),
            "milestones": dict(self.milestones),
            "pipeline": dict(self.pipeline),
            "store": dict(self.store),
        }


class RewardsObservabilityStore:
    """Collect reward engine telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._brackets: Dict[str, int] = defaultdict(int)
        self._badges: Dict[str, int] = defaultdict(int)
        self._spins: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._milestones: Dict[str, int] = defaultdict(int)
        self._pipeline: Dict[str, int] = defaultdict(int)
        self._store: Dict[str, int] = defaultdict(int)

    def record_bracket_completion(self, reward_value: int, *, custom_tier: bool = False) -> None:
        with self._lock:
            self._brackets["cycles_completed"] += 1
            self._brackets["points_awarded"] += reward_value
            if custom_tier:
                self._brackets["custom_tier"] += 1

    def record_bracket_credit_failure(self) -> None:
        with self._lock:
            self._brackets["credit_failures"] += 1

    def record_badge_award(self, badge_slug: str) -> None:
        with self._lock:
            self._badges["total_awarded"] += 1
            self._badges[f"badge:{badge_slug}"] += 1

    def record_spin(self, reward_type: str) -> None:
        with self._lock:
            self._spins["total"] += 1
            self._spins[f"reward:{reward_type}"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_milestone_award(self, milestone_slug: str) -> None:
        with self._lock:
            self._milestones["total_awarded"] += 1
            self._milestones[f"milestone:{milestone_slug}"] += 1

    def record_pipeline_run(self, *, degraded: bool, failed_steps: list[str] | None = None) -> None:
        with self._lock:
            self._pipeline["runs"] += 1
            if degraded:
                self._pipeline["degraded"] += 1
            for step in failed_steps or []:
                self._pipeline[f"failed:{step}"] += 1

    def record_store_redemption(self, item_slug: str, points_spent: int) -> None:
        with self._lock:
            self._store["redemptions"] += 1
            self._store["points_spent"] += points_spent
            self._store[f"item:{item_slug}"] += 1

    def record_store_rejection(self, reason: str) -> None:
        with self._lock:
            self._store[f"rejected:{reason}"] += 1

    def snapshot(self) -> RewardsSnapshot:
        with self._lock:
            return RewardsSnapshot(
                brackets=dict(self._brackets),
                badges=dict(self._badges),
                spins=dict(self._spins),
                referrals=dict(self._referrals),
                milestones=dict(self._milestones),
                pipeline=dict(self._pipeline),
                store=dict(self._store),
            )

    def reset(self) -> None:
        with self._lock:
            self._brackets.clear()
            self._badges.clear()
            self._spins.clear()
            self._referrals.clear()
            self._milestones.clear()
            self._pipeline.clear()
            self._store.clear()


_STORE = RewardsObservabilityStore()


def get_rewards_store() -> RewardsObservabilityStore:
    return _STORE


__all__ = ["get_rewards_store", "RewardsObservabilityStore", "RewardsSnapshot"]
