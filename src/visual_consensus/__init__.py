"""
Visual Consensus - UI element detection by agreement of several strategies.

This package provides:
- Pluggable detection strategies (ONNX inference, template matching)
- Concurrent strategy execution with per-strategy timeouts
- Consensus fusion with overlap-based de-duplication
- A fingerprint-keyed LRU cache of fused results
"""

__version__ = "1.0.0"
__author__ = "Visual Consensus Team"

from .aggregator import ConsensusAggregator
from .cache import CacheStats, DetectionCache
from .config import Config, get_config, set_config
from .exceptions import DetectionError, InvalidInputError, StrategyCancelled
from .fingerprint import compute_fingerprint
from .logging_config import configure_logging
from .models import (
    BoundingBox,
    DetectionContext,
    ElementKind,
    ElementRecord,
    FusedResult,
    StrategyDiagnostic,
    StrategyOutcome,
)
from .orchestrator import (
    DetectionOrchestrator,
    DetectionPhase,
    PerformanceStatistics,
    create_orchestrator,
    get_orchestrator,
)
from .strategies import (
    BlockingDetectionStrategy,
    DetectionStrategy,
    InferenceStrategy,
    TemplateMatchingStrategy,
)

__all__ = [
    "__version__",
    "BlockingDetectionStrategy",
    "BoundingBox",
    "CacheStats",
    "Config",
    "ConsensusAggregator",
    "DetectionCache",
    "DetectionContext",
    "DetectionError",
    "DetectionOrchestrator",
    "DetectionPhase",
    "DetectionStrategy",
    "ElementKind",
    "ElementRecord",
    "FusedResult",
    "InferenceStrategy",
    "InvalidInputError",
    "PerformanceStatistics",
    "StrategyCancelled",
    "StrategyDiagnostic",
    "StrategyOutcome",
    "TemplateMatchingStrategy",
    "compute_fingerprint",
    "configure_logging",
    "create_orchestrator",
    "get_config",
    "get_orchestrator",
    "set_config",
]
