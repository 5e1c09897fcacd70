"""
Strategy Registry - Keeps detection strategies in priority order.
"""

import logging
from typing import Iterator, Optional

from ..models import DetectionContext
from .base import DetectionStrategy

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """
    Registry of detection strategies.

    Strategies are kept sorted by priority (highest first, then by id) so
    that iteration order never depends on registration order.
    """

    def __init__(self):
        self._strategies: list[DetectionStrategy] = []

    def register(self, strategy: DetectionStrategy) -> None:
        """
        Register a strategy, replacing any strategy with the same id.

        Raises:
            ValueError: If the strategy is not configured
        """
        if not strategy.is_configured():
            raise ValueError(f"Strategy {strategy.strategy_id!r} is not properly configured")

        if self.unregister(strategy.strategy_id):
            logger.debug(f"Replaced strategy {strategy.strategy_id}")

        self._strategies.append(strategy)
        # Keep sorted by priority (highest first)
        self._strategies.sort(key=lambda s: (-s.priority, s.strategy_id))

    def unregister(self, strategy_id: str) -> bool:
        """Remove a strategy. Returns True if it was registered."""
        for i, strategy in enumerate(self._strategies):
            if strategy.strategy_id == strategy_id:
                del self._strategies[i]
                return True
        return False

    def get(self, strategy_id: str) -> Optional[DetectionStrategy]:
        for strategy in self._strategies:
            if strategy.strategy_id == strategy_id:
                return strategy
        return None

    def get_all_strategies(self) -> list[DetectionStrategy]:
        """Get all registered strategies."""
        return self._strategies.copy()

    def applicable(self, context: DetectionContext) -> list[DetectionStrategy]:
        """Strategies that can handle the context, in priority order."""
        return [s for s in self._strategies if self._can_handle(s, context)]

    def get_optimal(self, context: DetectionContext) -> Optional[DetectionStrategy]:
        """
        Get the best strategy for a context.

        Returns the highest-priority strategy that:
        1. Is configured
        2. Can handle this context
        """
        for strategy in self._strategies:
            if strategy.is_configured() and self._can_handle(strategy, context):
                return strategy
        return None

    def validate(self) -> dict[str, bool]:
        """Map each strategy id to whether it is currently configured."""
        return {s.strategy_id: s.is_configured() for s in self._strategies}

    def priorities(self) -> dict[str, int]:
        return {s.strategy_id: s.priority for s in self._strategies}

    @staticmethod
    def _can_handle(strategy: DetectionStrategy, context: DetectionContext) -> bool:
        try:
            return bool(strategy.can_handle(context))
        except Exception as e:
            logger.warning(f"{strategy.name}.can_handle raised, skipping strategy: {e}")
            return False

    def __contains__(self, strategy_id: object) -> bool:
        return any(s.strategy_id == strategy_id for s in self._strategies)

    def __iter__(self) -> Iterator[DetectionStrategy]:
        return iter(self._strategies.copy())

    def __len__(self) -> int:
        return len(self._strategies)
