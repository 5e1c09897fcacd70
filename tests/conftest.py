"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest

import visual_consensus.config as config_module
from visual_consensus.config import Config


@pytest.fixture(autouse=True)
def default_config(monkeypatch):
    """Isolate every test from config files on the machine."""
    config = Config()
    monkeypatch.setattr(config_module, "_config", config)
    return config


@pytest.fixture
def screen():
    """A 320x240 BGR image with a few flat panels."""
    image = np.zeros((240, 320, 3), dtype=np.uint8)
    image[20:60, 20:140] = (200, 200, 200)
    image[100:130, 40:280] = (255, 255, 255)
    image[180:220, 200:300] = (90, 140, 220)
    return image
