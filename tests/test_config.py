"""
Tests for configuration and logging setup.
"""

import json
import logging

from visual_consensus.config import Config, LoggingConfig, get_config, set_config
from visual_consensus.logging_config import configure_logging


class TestConfig:
    """Dataclass configuration and JSON persistence."""

    def test_defaults(self):
        config = Config()
        assert config.cache.capacity == 50
        assert config.cache.fingerprint_size == 32
        assert config.aggregator.overlap_threshold == 0.4
        assert config.orchestrator.timeout_multiplier == 3.0
        assert config.inference.seed == 42
        assert config.aggregator.strategy_weights == {"inference": 1.0, "template_matching": 0.6}
        assert config.template.methods == (
            "TM_CCOEFF_NORMED", "TM_CCORR_NORMED", "TM_SQDIFF_NORMED",
        )

    def test_from_dict_ignores_unknown_keys(self):
        config = Config.from_dict({
            "cache": {"capacity": 5, "bogus": 1},
            "unknown_section": {"x": 1},
            "template": {"methods": ["TM_CCOEFF_NORMED"]},
        })
        assert config.cache.capacity == 5
        assert not hasattr(config.cache, "bogus")
        assert config.template.methods == ("TM_CCOEFF_NORMED",)

    def test_strategy_weights_from_dict(self):
        config = Config.from_dict({"aggregator": {"strategy_weights": {"ocr": 0.7}}})
        assert config.aggregator.strategy_weights == {"ocr": 0.7}
        assert Config().aggregator.strategy_weights["inference"] == 1.0

    def test_json_round_trip(self, tmp_path):
        config = Config()
        config.cache.capacity = 12
        config.inference.model_path = "models/ui.onnx"
        path = tmp_path / "nested" / "config.json"

        config.to_json(path)
        loaded = Config.from_json(path)

        assert loaded == config
        assert json.loads(path.read_text())["template"]["methods"][0] == "TM_CCOEFF_NORMED"

    def test_load_explicit_path(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"orchestrator": {"max_timeout": 2.5}}))
        assert Config.load(path).orchestrator.max_timeout == 2.5

    def test_load_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "env.json"
        path.write_text(json.dumps({"aggregator": {"overlap_threshold": 0.6}}))
        monkeypatch.setenv("VISUAL_CONSENSUS_CONFIG", str(path))
        assert Config.load().aggregator.overlap_threshold == 0.6

    def test_load_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("VISUAL_CONSENSUS_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert Config.load() == Config()

    def test_global_config(self):
        config = Config()
        config.cache.capacity = 3
        set_config(config)
        assert get_config() is config


class TestLogging:
    """configure_logging()."""

    def test_levels(self):
        assert configure_logging(LoggingConfig(debug=True)).level == logging.DEBUG
        assert configure_logging(LoggingConfig()).level == logging.INFO

    def test_repeated_calls_do_not_stack_handlers(self):
        configure_logging(LoggingConfig())
        logger = configure_logging(LoggingConfig())
        assert len(logger.handlers) == 1

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "detect.log"
        logger = configure_logging(LoggingConfig(log_file=str(log_file)))
        logging.getLogger("visual_consensus.cache").info("hello")

        for handler in logger.handlers:
            handler.flush()
        assert "visual_consensus.cache - INFO - hello" in log_file.read_text()

        configure_logging(LoggingConfig())
