"""
Base classes for detection strategies.

All strategies implement the same interface, making them interchangeable
behind the orchestrator.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from ..exceptions import StrategyCancelled
from ..models import DetectionContext, ElementRecord, StrategyOutcome

logger = logging.getLogger(__name__)


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    """Raise StrategyCancelled when the orchestrator has abandoned this run."""
    if cancel_event is not None and cancel_event.is_set():
        raise StrategyCancelled("Detection was cancelled")


def suppress_overlaps(
    elements: Iterable[ElementRecord],
    threshold: float
) -> list[ElementRecord]:
    """
    Greedy non-maximum suppression by confidence.

    An element is dropped when its IoU with an already kept, more
    confident element exceeds ``threshold``.
    """
    ranked = sorted(elements, key=lambda e: e.confidence, reverse=True)
    kept: list[ElementRecord] = []

    for elem in ranked:
        if all(elem.bounds.iou(other.bounds) <= threshold for other in kept):
            kept.append(elem)

    return kept


class DetectionStrategy(ABC):
    """
    Abstract base class for detection strategies.

    Each strategy implements a different way of finding UI elements:
    - Inference: neural object detection (ONNX model)
    - Template: correlation against a known element image
    """

    @property
    @abstractmethod
    def strategy_id(self) -> str:
        """Stable identifier used in diagnostics, timeouts and merged properties."""
        pass

    @property
    def name(self) -> str:
        """Human readable name for logging."""
        return self.strategy_id

    @property
    @abstractmethod
    def priority(self) -> int:
        """
        Priority for tie-breaking (higher = preferred).

        - Inference: 90
        - Template: 60
        """
        pass

    @abstractmethod
    def can_handle(self, context: DetectionContext) -> bool:
        """
        Check if this strategy applies to the given context.

        Must be cheap and must not raise.
        """
        pass

    @abstractmethod
    async def detect(
        self,
        context: DetectionContext,
        cancel_event: Optional[threading.Event] = None
    ) -> StrategyOutcome:
        """
        Detect elements in ``context.image``.

        Internal failures are reported as an unsuccessful outcome with a
        reason, never raised. ``cancel_event`` is set once the orchestrator
        stops waiting for this strategy.
        """
        pass

    @abstractmethod
    def estimated_processing_time(self, image_size: tuple[int, int]) -> float:
        """Expected runtime in seconds for an image of (width, height)."""
        pass

    def is_configured(self) -> bool:
        """Check if prerequisites (model files etc.) are present."""
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.strategy_id!r}, priority={self.priority})"


class BlockingDetectionStrategy(DetectionStrategy):
    """
    Strategy whose detection body is synchronous CPU work.

    Each call runs the body on its own daemon thread and hands the outcome
    back to the loop with ``call_soon_threadsafe``. An abandoned body keeps
    running until it returns or notices ``cancel_event``. Subclasses implement
    ``_detect_blocking`` and call ``check_cancelled`` between expensive
    steps.
    """

    @abstractmethod
    def _detect_blocking(
        self,
        context: DetectionContext,
        cancel_event: threading.Event
    ) -> tuple[list[ElementRecord], dict[str, Any]]:
        """Return the detected elements and outcome metadata."""
        pass

    async def detect(
        self,
        context: DetectionContext,
        cancel_event: Optional[threading.Event] = None
    ) -> StrategyOutcome:
        if cancel_event is None:
            cancel_event = threading.Event()
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def worker():
            outcome = self._run(context, cancel_event)
            try:
                loop.call_soon_threadsafe(_resolve, future, outcome)
            except RuntimeError:
                logger.debug(f"{self.name} finished after its event loop closed")

        thread = threading.Thread(
            target=worker, name=f"detect-{self.strategy_id}", daemon=True
        )
        thread.start()

        try:
            return await future
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    def _run(self, context: DetectionContext, cancel_event: threading.Event) -> StrategyOutcome:
        start_time = time.perf_counter()

        try:
            check_cancelled(cancel_event)
            elements, metadata = self._detect_blocking(context, cancel_event)
        except StrategyCancelled:
            logger.debug(f"{self.name} stopped after cancellation")
            return StrategyOutcome.failed(
                self.strategy_id, "cancelled", _elapsed_ms(start_time)
            )
        except Exception as e:
            logger.warning(f"{self.name} failed: {e}")
            return StrategyOutcome.failed(
                self.strategy_id, str(e) or type(e).__name__, _elapsed_ms(start_time)
            )

        return StrategyOutcome.succeeded(
            self.strategy_id, elements, _elapsed_ms(start_time), metadata
        )


def _resolve(future: asyncio.Future, outcome: StrategyOutcome) -> None:
    if not future.done():
        future.set_result(outcome)


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
