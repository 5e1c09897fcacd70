"""
Exceptions raised by Visual Consensus.
"""


class DetectionError(Exception):
    """Base class for detection errors."""


class InvalidInputError(DetectionError, ValueError):
    """The image or detection context was rejected before any strategy ran."""


class StrategyCancelled(DetectionError):
    """Raised inside a strategy when its cancellation event has been set."""
