"""
Neural inference strategy.

Runs a YOLO-style ONNX model over the image. When no model is available
and the synthetic fallback is enabled, emits a reproducible synthetic
element set generated from a fixed seed instead.
"""

import logging
import os
import threading
from typing import Any, Optional

import cv2
import numpy as np
import onnxruntime as ort

from ..config import InferenceConfig, get_config
from ..exceptions import DetectionError
from ..models import BoundingBox, DetectionContext, ElementKind, ElementRecord
from .base import BlockingDetectionStrategy, check_cancelled, suppress_overlaps

logger = logging.getLogger(__name__)

# Model class index -> element kind
CLASS_KINDS = (
    ElementKind.BUTTON,
    ElementKind.TEXT_BOX,
    ElementKind.LABEL,
    ElementKind.DROPDOWN,
)

# Reference resolution for the runtime estimate
REFERENCE_PIXELS = 640 * 480
BASE_ESTIMATE_SECONDS = 1.0
MAX_SCALE = 3.0


class InferenceStrategy(BlockingDetectionStrategy):
    """
    Detects elements with an ONNX object detection model.

    The model is loaded on first use; loading happens once under a
    private lock so concurrent detection calls share one session.
    """

    def __init__(
        self,
        config: Optional[InferenceConfig] = None,
        strategy_id: str = "inference",
        priority: int = 90
    ):
        self.config = config or get_config().inference
        self._strategy_id = strategy_id
        self._priority = priority

        self._model_lock = threading.Lock()
        self._session: Optional[ort.InferenceSession] = None
        self._input_name: Optional[str] = None
        self._load_attempted = False

    @property
    def strategy_id(self) -> str:
        return self._strategy_id

    @property
    def name(self) -> str:
        return "AI Inference"

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def model_loaded(self) -> bool:
        return self._session is not None

    def _model_file_exists(self) -> bool:
        return bool(self.config.model_path) and os.path.isfile(self.config.model_path)

    def is_configured(self) -> bool:
        return self._model_file_exists() or self.config.synthetic_fallback

    def can_handle(self, context: DetectionContext) -> bool:
        image = context.image
        if image is None or image.size == 0 or image.ndim not in (2, 3):
            return False
        return self.is_configured()

    def estimated_processing_time(self, image_size: tuple[int, int]) -> float:
        width, height = image_size
        scale = min((width * height) / REFERENCE_PIXELS, MAX_SCALE)
        return BASE_ESTIMATE_SECONDS * scale

    def _ensure_model(self) -> Optional[ort.InferenceSession]:
        """Load the model once. Returns None when no usable model exists."""
        with self._model_lock:
            if self._load_attempted:
                return self._session
            self._load_attempted = True

            if not self._model_file_exists():
                if self.config.model_path:
                    logger.warning(f"Model file not found: {self.config.model_path}")
                return None

            try:
                logger.info(f"Loading ONNX model: {self.config.model_path}")
                # CPU-only for maximum portability
                self._session = ort.InferenceSession(
                    self.config.model_path,
                    providers=["CPUExecutionProvider"],
                )
                self._input_name = self._session.get_inputs()[0].name
            except Exception as e:
                logger.error(f"Failed to load ONNX model {self.config.model_path}: {e}")
                self._session = None

            return self._session

    def _detect_blocking(
        self,
        context: DetectionContext,
        cancel_event: threading.Event
    ) -> tuple[list[ElementRecord], dict[str, Any]]:
        session = self._ensure_model()
        check_cancelled(cancel_event)

        if session is not None:
            candidates = self._run_model(session, context, cancel_event)
            source = "model"
        elif self.config.synthetic_fallback:
            candidates = self._synthetic_elements(context)
            source = "synthetic"
        else:
            raise DetectionError("No model loaded and synthetic fallback is disabled")

        check_cancelled(cancel_event)

        candidates = [e for e in candidates if e.confidence >= context.min_confidence]
        elements = suppress_overlaps(candidates, self.config.nms_threshold)
        elements = elements[:context.max_results]

        return elements, {"source": source, "candidates": len(candidates)}

    def _run_model(
        self,
        session: ort.InferenceSession,
        context: DetectionContext,
        cancel_event: threading.Event
    ) -> list[ElementRecord]:
        image = context.image
        img_w, img_h = context.image_size
        size = self.config.input_size

        blob = self._preprocess(image, size)
        check_cancelled(cancel_event)

        outputs = session.run(None, {self._input_name: blob})[0]

        # Drop the batch dimension if present
        if outputs.ndim == 3 and outputs.shape[0] == 1:
            outputs = outputs[0]
        if outputs.ndim != 2 or outputs.shape[1] < 6:
            raise DetectionError(f"Unexpected model output shape {outputs.shape}")

        scale_x = img_w / size
        scale_y = img_h / size
        threshold = self.config.confidence_threshold
        elements = []

        for row in outputs:
            objectness = float(row[4])
            class_scores = row[5:]
            class_id = int(np.argmax(class_scores))
            score = objectness * float(class_scores[class_id])
            if score < threshold:
                continue

            cx, cy, w, h = (float(v) for v in row[:4])
            x1 = max(0, int(round((cx - w / 2) * scale_x)))
            y1 = max(0, int(round((cy - h / 2) * scale_y)))
            x2 = min(img_w, int(round((cx + w / 2) * scale_x)))
            y2 = min(img_h, int(round((cy + h / 2) * scale_y)))
            if x2 <= x1 or y2 <= y1:
                continue

            kind = CLASS_KINDS[class_id] if class_id < len(CLASS_KINDS) else ElementKind.UNKNOWN
            elements.append(ElementRecord(
                bounds=BoundingBox(x1, y1, x2 - x1, y2 - y1),
                kind=kind,
                confidence=min(max(score, 0.0), 1.0),
                strategy_id=self.strategy_id,
                properties={"class_id": class_id},
            ))

        logger.debug(f"Model produced {len(elements)} detections above {threshold}")
        return elements

    @staticmethod
    def _preprocess(image: np.ndarray, size: int) -> np.ndarray:
        """Resize to the model resolution and convert to a 1x3xHxW float blob."""
        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)

        if image.ndim == 2:
            rgb = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
        elif image.shape[2] == 4:
            rgb = cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
        else:
            rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        img = cv2.resize(rgb, (size, size))
        img = img.astype(np.float32) / 255.0
        return img.transpose(2, 0, 1)[None]

    def _synthetic_elements(self, context: DetectionContext) -> list[ElementRecord]:
        """Reproducible stand-in detections for running without a model."""
        img_w, img_h = context.image_size
        rng = np.random.default_rng(self.config.seed)

        count = int(rng.integers(3, 9))
        elements = []

        for index in range(count):
            width = min(int(rng.integers(60, 201)), img_w)
            height = min(int(rng.integers(25, 61)), img_h)
            x = int(rng.integers(0, img_w - width + 1))
            y = int(rng.integers(0, img_h - height + 1))
            confidence = 0.7 + float(rng.random()) * 0.25
            kind = CLASS_KINDS[int(rng.integers(0, len(CLASS_KINDS)))]

            elements.append(ElementRecord(
                bounds=BoundingBox(x, y, width, height),
                kind=kind,
                confidence=confidence,
                strategy_id=self.strategy_id,
                properties={"synthetic": True, "index": index},
            ))

        return elements
