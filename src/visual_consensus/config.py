"""
Configuration management for Visual Consensus.
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional
import json
import os


@dataclass
class CacheConfig:
    """Detection cache configuration."""

    # Disable to run every call uncached
    enabled: bool = True

    # Maximum number of fused results kept in memory
    capacity: int = 50

    # Side length of the downsampled image used for fingerprints
    fingerprint_size: int = 32

    # Intensity levels kept after normalisation (absorbs sensor noise)
    quantization_levels: int = 16


@dataclass
class AggregatorConfig:
    """Consensus aggregation configuration."""

    # IoU at or above which two candidates are treated as the same element
    overlap_threshold: float = 0.4

    # Record discarded duplicates on the element that beat them
    merge_discarded: bool = True

    # Trust per strategy id when blending the confidences of agreeing candidates
    strategy_weights: dict[str, float] = field(
        default_factory=lambda: {"inference": 1.0, "template_matching": 0.6}
    )

    # Weight for strategies missing from strategy_weights
    default_weight: float = 1.0


@dataclass
class OrchestratorConfig:
    """Strategy scheduling configuration."""

    # Timeout = estimated processing time * multiplier, clamped below
    timeout_multiplier: float = 3.0

    # Timeout bounds in seconds
    min_timeout: float = 0.5
    max_timeout: float = 30.0

    # Maximum strategies running at once (None = all applicable)
    max_parallelism: Optional[int] = None

    # Execution metrics kept for performance statistics
    history_size: int = 100


@dataclass
class TemplateConfig:
    """Template matching strategy configuration."""

    # OpenCV correlation methods to combine
    methods: tuple[str, ...] = ("TM_CCOEFF_NORMED", "TM_CCORR_NORMED", "TM_SQDIFF_NORMED")

    # IoU above which two hits of this strategy are merged
    nms_threshold: float = 0.3

    # Peaks kept per method = max_results * candidate_factor
    candidate_factor: int = 4


@dataclass
class InferenceConfig:
    """Neural inference strategy configuration."""

    # ONNX model file (None = synthetic output only)
    model_path: Optional[str] = None

    # Seed for synthetic detections when no model is loaded
    seed: int = 42

    # Minimum objectness * class score for a raw detection
    confidence_threshold: float = 0.5

    # IoU above which overlapping detections are suppressed
    nms_threshold: float = 0.4

    # Square model input resolution
    input_size: int = 640

    # Emit seeded synthetic detections when the model is unavailable
    synthetic_fallback: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration."""

    # Enable debug logging
    debug: bool = False

    # Log file path (None = console only)
    log_file: Optional[str] = None


@dataclass
class Config:
    """Main configuration container."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load configuration from file or use defaults."""
        if path is None:
            # Try common locations
            candidates = [
                Path.cwd() / "visual-consensus.json",
                Path.home() / ".visual-consensus" / "config.json",
            ]
            env_path = os.getenv("VISUAL_CONSENSUS_CONFIG")
            if env_path:
                candidates.insert(0, Path(env_path))
            for candidate in candidates:
                if candidate.exists():
                    path = candidate
                    break

        if path and path.exists():
            return cls.from_json(path)

        return cls()

    @classmethod
    def from_json(cls, path: Path) -> "Config":
        """Load configuration from JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Build a configuration, ignoring unknown sections and keys."""
        config = cls()

        for section in fields(config):
            if section.name not in data:
                continue
            target = getattr(config, section.name)
            for key, value in data[section.name].items():
                if hasattr(target, key):
                    if key == "methods":
                        value = tuple(value)
                    setattr(target, key, value)

        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["template"]["methods"] = list(self.template.methods)
        return data

    def to_json(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
