"""
Template matching strategy.

Finds occurrences of a known element image (the template) in the
source image by normalised cross-correlation. Several OpenCV methods are
combined; each contributes its local maxima as candidates and
overlapping hits are then suppressed.
"""

import logging
import threading
from typing import Any, Optional

import cv2
import numpy as np

from ..config import TemplateConfig, get_config
from ..fingerprint import to_grayscale
from ..models import BoundingBox, DetectionContext, ElementRecord
from .base import BlockingDetectionStrategy, check_cancelled, suppress_overlaps

logger = logging.getLogger(__name__)

# Normalised methods only; their scores are comparable as confidences
SUPPORTED_METHODS = {
    "TM_CCOEFF_NORMED": cv2.TM_CCOEFF_NORMED,
    "TM_CCORR_NORMED": cv2.TM_CCORR_NORMED,
    "TM_SQDIFF_NORMED": cv2.TM_SQDIFF_NORMED,
}

# Windows (or templates) flatter than this have no defined correlation
FLAT_VARIANCE = 1e-2

MIN_ESTIMATE_MS = 100.0
MAX_ESTIMATE_MS = 5000.0


class TemplateMatchingStrategy(BlockingDetectionStrategy):
    """
    Detects elements by correlating ``context.template`` over the image.

    Only handles contexts that carry a template no larger than the image.
    Hits are reported with ``context.template_kind``.
    """

    def __init__(
        self,
        config: Optional[TemplateConfig] = None,
        strategy_id: str = "template_matching",
        priority: int = 60
    ):
        self.config = config or get_config().template
        self._strategy_id = strategy_id
        self._priority = priority

        self._methods: list[tuple[str, int]] = []
        for name in self.config.methods:
            if name in SUPPORTED_METHODS:
                self._methods.append((name, SUPPORTED_METHODS[name]))
            else:
                logger.warning(f"Ignoring unsupported template matching method {name}")

    @property
    def strategy_id(self) -> str:
        return self._strategy_id

    @property
    def name(self) -> str:
        return "Template Matching"

    @property
    def priority(self) -> int:
        return self._priority

    def is_configured(self) -> bool:
        return bool(self._methods)

    def can_handle(self, context: DetectionContext) -> bool:
        image, template = context.image, context.template
        if image is None or template is None:
            return False
        if image.size == 0 or template.size == 0:
            return False
        if image.ndim < 2 or template.ndim < 2:
            return False
        return template.shape[0] <= image.shape[0] and template.shape[1] <= image.shape[1]

    def estimated_processing_time(self, image_size: tuple[int, int]) -> float:
        width, height = image_size
        estimate_ms = (width * height) / 10000
        return min(max(estimate_ms, MIN_ESTIMATE_MS), MAX_ESTIMATE_MS) / 1000

    def _detect_blocking(
        self,
        context: DetectionContext,
        cancel_event: threading.Event
    ) -> tuple[list[ElementRecord], dict[str, Any]]:
        image = _prepare(context.image)
        template = _prepare(context.template)
        tmpl_h, tmpl_w = template.shape[:2]

        limit = context.max_results * self.config.candidate_factor
        candidates: list[ElementRecord] = []

        if float(template.var()) < FLAT_VARIANCE:
            logger.debug("Template is uniform, nothing to correlate")
            return [], {
                "methods": [name for name, _ in self._methods],
                "candidates": 0,
                "template_size": [tmpl_w, tmpl_h],
            }

        flat = _window_variance(image, tmpl_h, tmpl_w) < FLAT_VARIANCE

        for method_name, method in self._methods:
            check_cancelled(cancel_event)

            scores = cv2.matchTemplate(image, template, method)
            scores = np.nan_to_num(scores, nan=0.0, posinf=1.0, neginf=0.0)
            if method == cv2.TM_SQDIFF_NORMED:
                scores = 1.0 - scores
            scores = np.clip(scores, 0.0, 1.0)
            scores[flat] = 0.0

            for x, y, score in self._find_peaks(scores, context.min_confidence, limit):
                candidates.append(ElementRecord(
                    bounds=BoundingBox(x, y, tmpl_w, tmpl_h),
                    kind=context.template_kind,
                    confidence=score,
                    strategy_id=self.strategy_id,
                    properties={"method": method_name},
                ))

        check_cancelled(cancel_event)

        elements = suppress_overlaps(candidates, self.config.nms_threshold)
        elements = elements[:context.max_results]

        logger.debug(
            f"Template matching kept {len(elements)} of {len(candidates)} candidates"
        )

        return elements, {
            "methods": [name for name, _ in self._methods],
            "candidates": len(candidates),
            "template_size": [tmpl_w, tmpl_h],
        }

    @staticmethod
    def _find_peaks(
        scores: np.ndarray,
        threshold: float,
        limit: int
    ) -> list[tuple[int, int, float]]:
        """Local maxima of a score map at or above threshold, best first."""
        kernel = np.ones((3, 3), np.uint8)
        dilated = cv2.dilate(scores, kernel)

        mask = (scores >= dilated) & (scores >= threshold) & (scores > 0)
        ys, xs = np.nonzero(mask)
        if len(ys) == 0:
            return []

        values = scores[ys, xs]
        order = np.argsort(-values, kind="stable")[:limit]

        return [(int(xs[i]), int(ys[i]), float(values[i])) for i in order]


def _prepare(array: np.ndarray) -> np.ndarray:
    """Grayscale float32 copy; image and template go through the same path."""
    if array.dtype not in (np.uint8, np.uint16, np.float32):
        array = array.astype(np.float32)
    return to_grayscale(array).astype(np.float32)


def _window_variance(image: np.ndarray, height: int, width: int) -> np.ndarray:
    """
    Intensity variance of every template-sized window.

    Laid out like the matchTemplate result: entry (y, x) covers the window
    whose top-left corner is (x, y).
    """
    sums, squares = cv2.integral2(image, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)

    def window(table):
        return (
            table[height:, width:] - table[:-height, width:]
            - table[height:, :-width] + table[:-height, :-width]
        )

    count = float(height * width)
    mean = window(sums) / count
    return window(squares) / count - mean * mean
