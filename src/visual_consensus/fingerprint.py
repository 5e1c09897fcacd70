"""
Content-addressed image fingerprints used as cache keys.

The fingerprint is computed from a coarse grayscale thumbnail whose
intensities are stretched to the full range and quantized, so repeated
captures of the same screen hash identically even with small pixel noise
or a global brightness shift.
"""

import hashlib

import cv2
import numpy as np

from .exceptions import InvalidInputError

DIGEST_SIZE = 16  # bytes


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert a grayscale, BGR or BGRA array to a single channel."""
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 1:
        return np.ascontiguousarray(image[:, :, 0])
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    raise InvalidInputError(f"Unsupported channel count: {channels}")


def compute_fingerprint(image: np.ndarray, size: int = 32, levels: int = 16) -> str:
    """
    Compute a fixed-size digest of an image.

    Args:
        image: Grayscale, BGR or BGRA image as numpy array
        size: Side length of the thumbnail the digest is computed from
        levels: Number of intensity levels kept after normalisation

    Returns:
        Hex digest string (32 characters)
    """
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise InvalidInputError("Cannot fingerprint an empty image")
    if image.ndim not in (2, 3):
        raise InvalidInputError(f"Expected a 2D or 3D image array, got {image.ndim}D")
    if size <= 0 or levels < 2:
        raise ValueError("Fingerprint size must be positive and levels at least 2")

    gray = to_grayscale(image.astype(np.float32, copy=False))
    thumb = cv2.resize(gray, (size, size), interpolation=cv2.INTER_AREA)

    low = float(thumb.min())
    span = float(thumb.max()) - low
    if span > 0:
        normalized = (thumb - low) / span
    else:
        normalized = np.zeros_like(thumb)

    quantized = np.rint(normalized * (levels - 1)).astype(np.uint8)

    digest = hashlib.blake2b(digest_size=DIGEST_SIZE)
    digest.update(f"{size}:{levels}:".encode())
    digest.update(quantized.tobytes())
    return digest.hexdigest()
