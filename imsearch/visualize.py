"""Rendering of keypoints and matches for the show-* commands."""

import os
import logging
from typing import List

import cv2
import numpy as np

from .orb_extractor import Keypoint
from .matcher import MatchResult

logger = logging.getLogger(__name__)

KEYPOINT_COLOR = (0, 255, 0)


def draw_keypoints(image_np: np.ndarray, keypoints: List[Keypoint]) -> np.ndarray:
    """Draw keypoints with size and orientation on a copy of the image."""
    return cv2.drawKeypoints(
        image_np, [kp.to_cv() for kp in keypoints], None, KEYPOINT_COLOR,
        flags=cv2.DRAW_MATCHES_FLAGS_DRAW_RICH_KEYPOINTS,
    )


def draw_matches(image1: np.ndarray, image2: np.ndarray,
                 result: MatchResult) -> np.ndarray:
    """Side-by-side rendering with a line per good match."""
    return cv2.drawMatches(
        image1, [kp.to_cv() for kp in result.features1.keypoints],
        image2, [kp.to_cv() for kp in result.features2.keypoints],
        result.matches, None,
        flags=cv2.DRAW_MATCHES_FLAGS_NOT_DRAW_SINGLE_POINTS,
    )


def save_image(image_np: np.ndarray, output: str) -> None:
    """
    Write an image, choosing the format from the output extension.

    Raises:
        OSError: If OpenCV cannot encode or write the file.
    """
    ext = os.path.splitext(output)[1] or ".png"
    try:
        ok, encoded = cv2.imencode(ext, image_np)
    except cv2.error as e:
        raise OSError(f"Could not encode image as {ext}: {e}") from e
    if not ok:
        raise OSError(f"Could not encode image as {ext}")
    encoded.tofile(output)
    logger.info(f"Wrote {output}")
