"""
Image loading and normalization.

Everything downstream of this module works on a single-channel uint8
image. Decoding failures are reported as InvalidImage so callers can
decide whether they are fatal (single-image commands) or skippable
(bulk ingestion).
"""

import os
import logging

import cv2
import numpy as np

from .errors import InvalidImage

logger = logging.getLogger(__name__)


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8, rescaling [0, 1] float input."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    return image_np


def to_grayscale(image_np: np.ndarray) -> np.ndarray:
    """
    Convert a decoded image to single-channel uint8.

    Accepts grayscale (H, W), single-channel (H, W, 1), BGR (H, W, 3)
    and BGRA (H, W, 4) arrays, matching what cv2.imread produces.

    Raises:
        InvalidImage: If the array is empty or has an unsupported shape.
    """
    if image_np is None or not isinstance(image_np, np.ndarray) or image_np.size == 0:
        raise InvalidImage("Empty image")

    image_np = normalize_image(image_np)

    if image_np.ndim == 2:
        return image_np
    if image_np.ndim == 3:
        channels = image_np.shape[2]
        if channels == 1:
            return image_np[:, :, 0]
        if channels == 3:
            return cv2.cvtColor(image_np, cv2.COLOR_BGR2GRAY)
        if channels == 4:
            return cv2.cvtColor(image_np, cv2.COLOR_BGRA2GRAY)

    raise InvalidImage(f"Unsupported image shape {image_np.shape}")


def load_image(path: str, grayscale: bool = True) -> np.ndarray:
    """
    Read an image from disk.

    Args:
        path: Image file path.
        grayscale: Return a single-channel image (default) or the
            decoded BGR image for rendering.

    Returns:
        uint8 image array.

    Raises:
        InvalidImage: If the file does not exist or cannot be decoded.
    """
    if not os.path.isfile(path):
        raise InvalidImage(f"No such image file: {path}")

    # np.fromfile + imdecode copes with non-ASCII paths, unlike imread
    try:
        raw = np.fromfile(path, dtype=np.uint8)
    except OSError as e:
        raise InvalidImage(f"Could not read {path}: {e}") from e

    flags = cv2.IMREAD_GRAYSCALE if grayscale else cv2.IMREAD_COLOR
    image = cv2.imdecode(raw, flags) if raw.size else None
    if image is None:
        raise InvalidImage(f"Could not decode image: {path}")

    logger.debug(f"Loaded {path}: {image.shape[1]}x{image.shape[0]}")
    return image
