"""
Detection Orchestrator - Core coordination module.

Runs every applicable detection strategy concurrently, each under its own
timeout, fuses their outcomes into one consensus result and caches fused
results by image fingerprint.

Uses a strategy-based architecture:
- Inference (ONNX model or seeded synthetic output)
- Template matching (OpenCV correlation)
- Any externally registered DetectionStrategy
"""

import asyncio
import hashlib
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import numpy as np

from .aggregator import ConsensusAggregator
from .cache import CacheStats, DetectionCache
from .config import Config, OrchestratorConfig, get_config
from .exceptions import InvalidInputError
from .fingerprint import compute_fingerprint
from .models import DetectionContext, FusedResult, StrategyOutcome
from .strategies import (
    DetectionStrategy,
    InferenceStrategy,
    StrategyRegistry,
    TemplateMatchingStrategy,
)

logger = logging.getLogger(__name__)


class DetectionPhase(str, Enum):
    """Stages a detection call passes through."""

    IDLE = "idle"
    VALIDATING = "validating"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT_DONE = "cache_hit_done"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    CACHE_STORE = "cache_store"
    DONE = "done"


@dataclass
class ExecutionMetric:
    """Summary of one detection call."""

    timestamp: float
    duration_ms: float
    cache_hit: bool
    success: bool
    element_count: int
    strategies_run: int = 0
    timeouts: int = 0
    failures: int = 0

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "cache_hit": self.cache_hit,
            "success": self.success,
            "element_count": self.element_count,
            "strategies_run": self.strategies_run,
            "timeouts": self.timeouts,
            "failures": self.failures,
        }


@dataclass
class PerformanceStatistics:
    """Aggregate view over the recent execution history."""

    executions: int
    cache_hits: int
    cache_hit_rate: float
    average_duration_ms: float
    timeouts: int
    failures: int
    registered_strategies: int

    def to_dict(self) -> dict:
        return {
            "executions": self.executions,
            "cache_hits": self.cache_hits,
            "cache_hit_rate": self.cache_hit_rate,
            "average_duration_ms": self.average_duration_ms,
            "timeouts": self.timeouts,
            "failures": self.failures,
            "registered_strategies": self.registered_strategies,
        }


class DetectionOrchestrator:
    """
    Main entry point for consensus element detection.

    Provides:
    - A registry of pluggable detection strategies
    - Concurrent strategy execution with per-strategy timeouts
    - Consensus fusion of all outcomes
    - An optional fingerprint-keyed result cache

    Args:
        strategies: Strategies to register up front
        cache: Result cache; None runs every call uncached
        aggregator: Consensus aggregator (default settings if omitted)
        config: Scheduling configuration
    """

    def __init__(
        self,
        strategies: Optional[list[DetectionStrategy]] = None,
        cache: Optional[DetectionCache] = None,
        aggregator: Optional[ConsensusAggregator] = None,
        config: Optional[OrchestratorConfig] = None
    ):
        self.config = config or get_config().orchestrator
        self._registry = StrategyRegistry()
        self._cache = cache
        self._aggregator = aggregator or ConsensusAggregator()

        # Execution history for performance statistics
        self._history: deque[ExecutionMetric] = deque(maxlen=self.config.history_size)
        self._history_lock = threading.Lock()

        for strategy in strategies or []:
            self.register_strategy(strategy)

    # ==================== Strategy Registry ====================

    def register_strategy(self, strategy: DetectionStrategy) -> None:
        """
        Register a strategy, replacing any registered strategy with the same id.

        Raises:
            ValueError: If the strategy is not configured
        """
        self._registry.register(strategy)
        logger.info(f"Registered strategy {strategy.strategy_id} (priority {strategy.priority})")

    def unregister_strategy(self, strategy_id: str) -> bool:
        """Remove a strategy. Returns True if it was registered."""
        removed = self._registry.unregister(strategy_id)
        if removed:
            logger.info(f"Unregistered strategy {strategy_id}")
        return removed

    def registered_strategies(self) -> list[DetectionStrategy]:
        """Registered strategies in priority order."""
        return self._registry.get_all_strategies()

    def validate_strategies(self) -> dict[str, bool]:
        """Map each strategy id to whether its prerequisites are present."""
        return self._registry.validate()

    def get_optimal_strategy(self, context: DetectionContext) -> Optional[DetectionStrategy]:
        """Highest-priority configured strategy that can handle the context."""
        return self._registry.get_optimal(context)

    @property
    def strategy_count(self) -> int:
        return len(self._registry)

    # ==================== Detection ====================

    async def detect(
        self,
        image: np.ndarray,
        context: Optional[DetectionContext] = None
    ) -> FusedResult:
        """
        Detect UI elements in an image by consensus of all applicable strategies.

        Args:
            image: Grayscale, BGR or BGRA image as numpy array
            context: Detection options (defaults if omitted)

        Returns:
            FusedResult with per-strategy diagnostics

        Raises:
            InvalidInputError: If the image or context is unusable; no strategy runs
        """
        start_time = time.perf_counter()
        phases = [DetectionPhase.IDLE]

        def enter(phase: DetectionPhase) -> None:
            phases.append(phase)
            logger.debug(f"Detection phase: {phase.value}")

        enter(DetectionPhase.VALIDATING)
        context = self._validate(image, context)

        cache_key = None
        if self._cache is not None:
            enter(DetectionPhase.CACHE_LOOKUP)
            cache_key, cached = self._cache_lookup(context)
            if cached is not None:
                enter(DetectionPhase.CACHE_HIT_DONE)
                result = self._annotate(cached, phases, cache_hit=True)
                self._record(start_time, result)
                return result

        applicable = self._registry.applicable(context)
        priorities = self._registry.priorities()
        if not applicable:
            logger.info("No registered strategy can handle this context")
            enter(DetectionPhase.DONE)
            result = self._annotate(
                FusedResult.empty(metadata={"reason": "no applicable strategy"}),
                phases,
            )
            self._record(start_time, result)
            return result

        enter(DetectionPhase.DISPATCHING)
        semaphore = (
            asyncio.Semaphore(self.config.max_parallelism)
            if self.config.max_parallelism else None
        )
        tasks = [
            asyncio.ensure_future(self._run_strategy(strategy, context, semaphore))
            for strategy in applicable
        ]

        enter(DetectionPhase.COLLECTING)
        outcomes = await asyncio.gather(*tasks)

        enter(DetectionPhase.AGGREGATING)
        fused = self._aggregator.aggregate(
            outcomes,
            max_results=context.max_results,
            priorities=priorities,
        )

        if fused.success and cache_key is not None:
            enter(DetectionPhase.CACHE_STORE)
            self._cache_store(cache_key, fused)

        enter(DetectionPhase.DONE)
        result = self._annotate(fused, phases)
        self._record(start_time, result, outcomes)
        return result

    def detect_sync(
        self,
        image: np.ndarray,
        context: Optional[DetectionContext] = None
    ) -> FusedResult:
        """
        Run detect() on a fresh event loop for synchronous callers.

        Strategies abandoned after a timeout are not waited for; their
        threads finish in the background.
        """
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(self.detect(image, context))
        finally:
            try:
                _cancel_pending(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    def _validate(
        self,
        image: np.ndarray,
        context: Optional[DetectionContext]
    ) -> DetectionContext:
        """Check inputs and bind a read-only view of the image into the context."""
        if image is None:
            raise InvalidInputError("Image is required")
        if not isinstance(image, np.ndarray):
            raise InvalidInputError(f"Image must be a numpy array, got {type(image).__name__}")
        if image.size == 0:
            raise InvalidInputError("Image is empty")
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (1, 3, 4)):
            raise InvalidInputError(f"Unsupported image shape {image.shape}")

        if len(self._registry) == 0:
            raise InvalidInputError("No detection strategies registered")

        if context is None:
            context = DetectionContext()
        elif not isinstance(context, DetectionContext):
            raise InvalidInputError(
                f"Context must be a DetectionContext, got {type(context).__name__}"
            )

        if context.max_results <= 0:
            raise InvalidInputError(f"max_results must be positive, got {context.max_results}")
        if not 0.0 <= context.min_confidence <= 1.0:
            raise InvalidInputError(
                f"min_confidence must be within [0, 1], got {context.min_confidence}"
            )
        if context.timeout is not None and context.timeout <= 0:
            raise InvalidInputError(f"timeout must be positive, got {context.timeout}")
        for strategy_id, timeout in context.strategy_timeouts.items():
            if timeout is None or timeout <= 0:
                raise InvalidInputError(f"Timeout for {strategy_id} must be positive, got {timeout}")
        if context.template is not None and (
            not isinstance(context.template, np.ndarray) or context.template.size == 0
        ):
            raise InvalidInputError("Template must be a non-empty numpy array")

        view = image.view()
        view.flags.writeable = False
        return replace(context, image=view)

    def _timeout_for(self, strategy: DetectionStrategy, context: DetectionContext) -> float:
        override = context.timeout_for(strategy.strategy_id)
        if override is not None:
            return float(override)

        try:
            estimate = float(strategy.estimated_processing_time(context.image_size))
        except Exception as e:
            logger.warning(f"{strategy.name} failed to estimate its runtime: {e}")
            return self.config.max_timeout

        timeout = estimate * self.config.timeout_multiplier
        return min(max(timeout, self.config.min_timeout), self.config.max_timeout)

    async def _run_strategy(
        self,
        strategy: DetectionStrategy,
        context: DetectionContext,
        semaphore: Optional[asyncio.Semaphore]
    ) -> StrategyOutcome:
        if semaphore is None:
            return await self._invoke(strategy, context)
        async with semaphore:
            return await self._invoke(strategy, context)

    async def _invoke(
        self,
        strategy: DetectionStrategy,
        context: DetectionContext
    ) -> StrategyOutcome:
        """Run one strategy under its timeout. Always returns an outcome."""
        timeout = self._timeout_for(strategy, context)
        cancel_event = threading.Event()
        start_time = time.perf_counter()

        task = asyncio.ensure_future(_call_detect(strategy, context, cancel_event))

        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            cancel_event.set()
            task.cancel()
            raise

        elapsed_ms = (time.perf_counter() - start_time) * 1000

        if not done:
            # Abandon without waiting; the strategy observes the event at its next check
            cancel_event.set()
            task.cancel()
            task.add_done_callback(_discard_late_result)
            logger.info(f"{strategy.name} timed out after {timeout:.2f}s")
            return StrategyOutcome.failed(
                strategy.strategy_id, "timeout", elapsed_ms, metadata={"timeout": timeout}
            )

        if task.cancelled():
            return StrategyOutcome.failed(strategy.strategy_id, "cancelled", elapsed_ms)

        try:
            outcome = task.result()
        except Exception as e:
            logger.warning(f"{strategy.name} raised during detection: {e}")
            return StrategyOutcome.failed(
                strategy.strategy_id, str(e) or type(e).__name__, elapsed_ms
            )

        if not isinstance(outcome, StrategyOutcome) or outcome.strategy_id != strategy.strategy_id:
            logger.warning(f"{strategy.name} returned an invalid outcome: {outcome!r}")
            return StrategyOutcome.failed(strategy.strategy_id, "invalid outcome", elapsed_ms)

        if not outcome.success:
            logger.info(f"{strategy.name} failed: {outcome.failure_reason}")

        return outcome

    # ==================== Cache ====================

    def _cache_lookup(self, context: DetectionContext) -> tuple[Optional[str], Optional[FusedResult]]:
        try:
            key = self._cache_key(context)
            cached = self._cache.get(key)
        except Exception as e:
            logger.warning(f"Cache lookup failed, continuing uncached: {e}")
            return None, None

        if cached is None:
            logger.debug(f"Cache miss {key[:8]}...")
        else:
            logger.debug(f"Cache hit {key[:8]}...")
        return key, cached

    def _cache_store(self, key: str, result: FusedResult) -> None:
        try:
            self._cache.put(key, result)
            logger.debug(f"Cached result {key[:8]}...")
        except Exception as e:
            logger.warning(f"Cache store failed: {e}")

    def _cache_key(self, context: DetectionContext) -> str:
        """
        Image fingerprint combined with the options that shape the result.

        Two calls on the same image with different templates or limits must
        not share an entry.
        """
        cache_config = self._cache.config
        image_fp = compute_fingerprint(
            context.image, cache_config.fingerprint_size, cache_config.quantization_levels
        )
        template_fp = (
            compute_fingerprint(
                context.template, cache_config.fingerprint_size, cache_config.quantization_levels
            )
            if context.template is not None else "-"
        )
        options = (
            f"{context.min_confidence}:{context.max_results}:"
            f"{template_fp}:{context.template_kind.value}"
        )

        digest = hashlib.blake2b(digest_size=16)
        digest.update(image_fp.encode())
        digest.update(options.encode())
        return digest.hexdigest()

    @property
    def cache(self) -> Optional[DetectionCache]:
        return self._cache

    def cache_stats(self) -> Optional[CacheStats]:
        """Cache statistics, or None when running uncached."""
        return self._cache.stats() if self._cache is not None else None

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    # ==================== Statistics ====================

    @staticmethod
    def _annotate(
        result: FusedResult,
        phases: list[DetectionPhase],
        cache_hit: bool = False
    ) -> FusedResult:
        metadata = dict(result.metadata)
        metadata["phases"] = tuple(p.value for p in phases)
        return replace(result, cache_hit=cache_hit, metadata=metadata)

    def _record(
        self,
        start_time: float,
        result: FusedResult,
        outcomes: Optional[list[StrategyOutcome]] = None
    ) -> None:
        outcomes = outcomes or []
        metric = ExecutionMetric(
            timestamp=time.time(),
            duration_ms=(time.perf_counter() - start_time) * 1000,
            cache_hit=result.cache_hit,
            success=result.success,
            element_count=len(result.elements),
            strategies_run=len(outcomes),
            timeouts=sum(1 for o in outcomes if o.failure_reason == "timeout"),
            failures=sum(1 for o in outcomes if not o.success),
        )
        with self._history_lock:
            self._history.append(metric)

    def execution_history(self) -> list[ExecutionMetric]:
        with self._history_lock:
            return list(self._history)

    def performance_statistics(self) -> PerformanceStatistics:
        """Statistics over the most recent detection calls."""
        history = self.execution_history()
        executions = len(history)
        cache_hits = sum(1 for m in history if m.cache_hit)

        return PerformanceStatistics(
            executions=executions,
            cache_hits=cache_hits,
            cache_hit_rate=cache_hits / executions if executions else 0.0,
            average_duration_ms=(
                sum(m.duration_ms for m in history) / executions if executions else 0.0
            ),
            timeouts=sum(m.timeouts for m in history),
            failures=sum(m.failures for m in history),
            registered_strategies=self.strategy_count,
        )


async def _call_detect(
    strategy: DetectionStrategy,
    context: DetectionContext,
    cancel_event: threading.Event
) -> StrategyOutcome:
    return await strategy.detect(context, cancel_event)


def _discard_late_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    # Retrieve the exception so it is not reported as never retrieved
    if task.exception() is None:
        logger.debug("Discarded result of a strategy that finished after its timeout")


def _cancel_pending(loop: asyncio.AbstractEventLoop) -> None:
    pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


def create_orchestrator(config: Optional[Config] = None) -> DetectionOrchestrator:
    """Build an orchestrator with the built-in strategies and a cache per configuration."""
    config = config or get_config()

    strategies: list[DetectionStrategy] = []
    for strategy in (InferenceStrategy(config.inference), TemplateMatchingStrategy(config.template)):
        if strategy.is_configured():
            strategies.append(strategy)
        else:
            logger.warning(f"Skipping unconfigured strategy {strategy.strategy_id}")

    cache = DetectionCache(config=config.cache) if config.cache.enabled else None

    return DetectionOrchestrator(
        strategies=strategies,
        cache=cache,
        aggregator=ConsensusAggregator(config.aggregator),
        config=config.orchestrator,
    )


# Global orchestrator instance
_orchestrator: Optional[DetectionOrchestrator] = None


def get_orchestrator() -> DetectionOrchestrator:
    """Get or create the global orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = create_orchestrator()
    return _orchestrator
