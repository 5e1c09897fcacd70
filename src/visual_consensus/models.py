"""
Data models for Visual Consensus.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import numpy as np
from rapidfuzz import fuzz


class ElementKind(str, Enum):
    """Kinds of UI elements a strategy can report."""

    BUTTON = "button"
    TEXT_BOX = "text_box"
    LABEL = "label"
    DROPDOWN = "dropdown"
    CHECKBOX = "checkbox"
    UNKNOWN = "unknown"


def _frozen_map(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class BoundingBox:
    """A rectangle in source-image pixel space."""

    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        """Right edge x coordinate."""
        return self.x + self.width

    @property
    def y2(self) -> int:
        """Bottom edge y coordinate."""
        return self.y + self.height

    @property
    def center(self) -> tuple[int, int]:
        """Center point of the bounding box."""
        return (self.x + self.width // 2, self.y + self.height // 2)

    @property
    def area(self) -> int:
        """Area of the bounding box."""
        return self.width * self.height

    def intersection(self, other: "BoundingBox") -> Optional["BoundingBox"]:
        """Get the intersection of two bounding boxes, None when they don't overlap."""
        x = max(self.x, other.x)
        y = max(self.y, other.y)
        x2 = min(self.x2, other.x2)
        y2 = min(self.y2, other.y2)

        if x2 <= x or y2 <= y:
            return None

        return BoundingBox(x, y, x2 - x, y2 - y)

    def iou(self, other: "BoundingBox") -> float:
        """Intersection area over union area."""
        inter = self.intersection(other)
        if inter is None:
            return 0.0

        union = self.area + other.area - inter.area
        return inter.area / union if union > 0 else 0.0

    def to_tuple(self) -> tuple[int, int, int, int]:
        """Convert to tuple (x, y, width, height)."""
        return (self.x, self.y, self.width, self.height)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BoundingBox":
        """Create from dictionary."""
        return cls(
            x=data["x"],
            y=data["y"],
            width=data["width"],
            height=data["height"],
        )


@dataclass(frozen=True)
class ElementRecord:
    """One element detected by one strategy."""

    bounds: BoundingBox
    kind: ElementKind
    confidence: float
    strategy_id: str
    text: Optional[str] = None
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.bounds.width <= 0 or self.bounds.height <= 0:
            raise ValueError(
                f"bounding box must have positive size, got {self.bounds.width}x{self.bounds.height}"
            )
        object.__setattr__(self, "properties", _frozen_map(self.properties))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "bounds": self.bounds.to_dict(),
            "kind": self.kind.value,
            "confidence": self.confidence,
            "strategy_id": self.strategy_id,
            "text": self.text,
            "properties": dict(self.properties),
            "position": list(self.bounds.center),
        }


@dataclass(frozen=True)
class StrategyOutcome:
    """The full output of one strategy invocation, success or failure."""

    strategy_id: str
    elements: tuple[ElementRecord, ...] = ()
    overall_confidence: float = 0.0
    duration_ms: float = 0.0
    success: bool = True
    failure_reason: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "elements", tuple(self.elements))
        object.__setattr__(self, "metadata", _frozen_map(self.metadata))

    @classmethod
    def succeeded(
        cls,
        strategy_id: str,
        elements: Iterable[ElementRecord],
        duration_ms: float,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "StrategyOutcome":
        """Build a successful outcome; overall confidence is the mean element confidence."""
        elements = tuple(elements)
        overall = sum(e.confidence for e in elements) / len(elements) if elements else 0.0
        return cls(
            strategy_id=strategy_id,
            elements=elements,
            overall_confidence=overall,
            duration_ms=duration_ms,
            success=True,
            metadata=metadata or {},
        )

    @classmethod
    def failed(
        cls,
        strategy_id: str,
        reason: str,
        duration_ms: float = 0.0,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "StrategyOutcome":
        """Build a failed outcome."""
        return cls(
            strategy_id=strategy_id,
            duration_ms=duration_ms,
            success=False,
            failure_reason=reason,
            metadata=metadata or {},
        )

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "elements": [e.to_dict() for e in self.elements],
            "overall_confidence": self.overall_confidence,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "failure_reason": self.failure_reason,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class StrategyDiagnostic:
    """Per-strategy telemetry attached to a fused result."""

    strategy_id: str
    duration_ms: float
    success: bool
    reason: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: StrategyOutcome) -> "StrategyDiagnostic":
        return cls(
            strategy_id=outcome.strategy_id,
            duration_ms=outcome.duration_ms,
            success=outcome.success,
            reason=outcome.failure_reason,
        )

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DetectionContext:
    """
    Options for one detection call.

    The orchestrator binds the source image into ``image`` before any
    strategy sees the context. Strategies must treat the image as read-only.
    """

    image: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    min_confidence: float = 0.5
    max_results: int = 100
    template: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    template_kind: ElementKind = ElementKind.UNKNOWN
    timeout: Optional[float] = None
    strategy_timeouts: Mapping[str, float] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "strategy_timeouts", _frozen_map(self.strategy_timeouts))
        object.__setattr__(self, "metadata", _frozen_map(self.metadata))

    @property
    def image_size(self) -> tuple[int, int]:
        """Image size as (width, height); (0, 0) when no image is bound."""
        if self.image is None or self.image.ndim < 2:
            return (0, 0)
        return (int(self.image.shape[1]), int(self.image.shape[0]))

    def timeout_for(self, strategy_id: str) -> Optional[float]:
        """Caller-supplied timeout for a strategy, if any."""
        if strategy_id in self.strategy_timeouts:
            return self.strategy_timeouts[strategy_id]
        return self.timeout


@dataclass(frozen=True)
class FusedResult:
    """De-duplicated, confidence-ranked elements agreed on across strategies."""

    elements: tuple[ElementRecord, ...] = ()
    strategy_ids: tuple[str, ...] = ()
    total_duration_ms: float = 0.0
    cache_hit: bool = False
    success: bool = True
    diagnostics: tuple[StrategyDiagnostic, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "elements", tuple(self.elements))
        object.__setattr__(self, "strategy_ids", tuple(self.strategy_ids))
        object.__setattr__(self, "diagnostics", tuple(self.diagnostics))
        object.__setattr__(self, "metadata", _frozen_map(self.metadata))

    @classmethod
    def empty(
        cls,
        diagnostics: Iterable[StrategyDiagnostic] = (),
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "FusedResult":
        """An unsuccessful result with no elements."""
        return cls(success=False, diagnostics=tuple(diagnostics), metadata=metadata or {})

    def elements_of_kind(self, kind: ElementKind) -> list[ElementRecord]:
        """Get all elements of a specific kind."""
        return [e for e in self.elements if e.kind == kind]

    def find_by_text(
        self,
        text: str,
        fuzzy: bool = True,
        threshold: int = 80
    ) -> Optional[ElementRecord]:
        """
        Find an element by its recognized text.

        Args:
            text: Text to search for
            fuzzy: Fall back to fuzzy matching when there is no exact match
            threshold: Minimum similarity score (0-100)
        """
        text_lower = text.lower()

        for elem in self.elements:
            if elem.text and elem.text.lower() == text_lower:
                return elem

        if not fuzzy:
            return None

        best_match = None
        best_score = 0.0

        for elem in self.elements:
            if elem.text:
                score = fuzz.ratio(text_lower, elem.text.lower())
                if score > best_score and score >= threshold:
                    best_score = score
                    best_match = elem

        return best_match

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "elements": [e.to_dict() for e in self.elements],
            "element_count": len(self.elements),
            "strategy_ids": list(self.strategy_ids),
            "total_duration_ms": self.total_duration_ms,
            "cache_hit": self.cache_hit,
            "success": self.success,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "metadata": dict(self.metadata),
        }
