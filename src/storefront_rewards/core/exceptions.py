"""Domain errors raised by the reward engine."""

from __future__ import annotations

from typing import Any


class RewardEngineError(RuntimeError):
    """Base exception for reward engine failures."""


class InvalidAmount(RewardEngineError):
    """Raised when a purchase or redemption amount is not a positive integer."""

    def __init__(self, amount: Any) -> None:
        super().__init__(f"Amount must be a positive integer in minor units, got {amount!r}")
        self.amount = amount


class NoSpinsAvailable(RewardEngineError):
    """Raised when a user spins the wheel without any remaining spins."""

    def __init__(self, user_id: Any) -> None:
        super().__init__("No spins available")
        self.user_id = user_id


class InsufficientPoints(RewardEngineError):
    """Raised when a redemption exceeds the available point balance."""

    def __init__(self, user_id: Any, requested: int) -> None:
        super().__init__(f"Insufficient points to redeem {requested}")
        self.user_id = user_id
        self.requested = requested


class RewardUnavailable(RewardEngineError):
    """Raised when a rewards store item is unknown or no longer offered."""

    def __init__(self, item_slug: str) -> None:
        super().__init__(f"Reward {item_slug!r} is not available")
        self.item_slug = item_slug


class OutOfStock(RewardEngineError):
    def __init__(self, item_slug: str) -> None:
        super().__init__(f"Reward {item_slug!r} is out of stock")
        self.item_slug = item_slug


class InvalidReferral(RewardEngineError):
    """Raised when a referral link cannot be created."""


class ConfigurationError(RewardEngineError):
    """Raised when reward catalog configuration is invalid.

    Only ever raised while loading configuration, never while serving a request.
    """


class ConcurrencyConflict(RewardEngineError):
    """Raised when an optimistic update lost its race twice in a row."""

    def __init__(self, operation: str, user_id: Any) -> None:
        super().__init__(f"Concurrent update conflict during {operation}")
        self.operation = operation
        self.user_id = user_id


__all__ = [
    "ConcurrencyConflict",
    "ConfigurationError",
    "InsufficientPoints",
    "InvalidAmount",
    "InvalidReferral",
    "NoSpinsAvailable",
    "OutOfStock",
    "RewardEngineError",
    "RewardUnavailable",
]
