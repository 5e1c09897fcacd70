"""
UI Element Detection Strategies.

This module provides different strategies for detecting UI elements:
- Inference: ONNX object detection, with a seeded synthetic fallback
- Template: OpenCV correlation against a known element image

The orchestrator runs every applicable strategy and fuses their findings.
"""

from .base import BlockingDetectionStrategy, DetectionStrategy, check_cancelled, suppress_overlaps
from .inference import InferenceStrategy
from .registry import StrategyRegistry
from .template import TemplateMatchingStrategy

__all__ = [
    "DetectionStrategy",
    "BlockingDetectionStrategy",
    "check_cancelled",
    "suppress_overlaps",
    "StrategyRegistry",
    "InferenceStrategy",
    "TemplateMatchingStrategy",
]
