"""
Direct descriptor matching between two images.

Used by show-matches: both images are described with the same extractor
and matched brute force by Hamming distance, without touching the store
or the LSH index. Matches are filtered with Lowe's ratio test and an
absolute distance cap.
"""

import os
import logging
from dataclasses import dataclass
from typing import List

import cv2
import numpy as np

from .orb_extractor import Features, OrbExtractor

logger = logging.getLogger(__name__)

DEFAULT_DISTANCE_RATIO = float(os.environ.get("IMSEARCH_MATCH_RATIO", "0.7"))
MAX_MATCH_DISTANCE = int(os.environ.get("IMSEARCH_MATCH_MAX_DISTANCE", "64"))

# Stateless, safe to reuse
_bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)


@dataclass
class MatchResult:
    features1: Features
    features2: Features
    matches: List[cv2.DMatch]

    def __len__(self) -> int:
        return len(self.matches)


def match_descriptors(desc1: np.ndarray,
                      desc2: np.ndarray,
                      distance_ratio: float = DEFAULT_DISTANCE_RATIO,
                      max_distance: int = MAX_MATCH_DISTANCE) -> List[cv2.DMatch]:
    """
    Match descriptors of image 1 against image 2.

    A match is kept when its distance is at most max_distance and clearly
    better than the second-best candidate (m < ratio * n). A lone
    candidate only has to pass the distance cap.

    Args:
        desc1: (n, 32) uint8 descriptors of the first image.
        desc2: (m, 32) uint8 descriptors of the second image.
        distance_ratio: Lowe's ratio threshold (lower = stricter).
        max_distance: Largest accepted Hamming distance.

    Returns:
        Good matches sorted by distance; queryIdx indexes desc1 and
        trainIdx indexes desc2.
    """
    if desc1 is None or desc2 is None or len(desc1) == 0 or len(desc2) == 0:
        return []

    knn = _bf_matcher.knnMatch(desc1, desc2, k=2)

    good = []
    for pair in knn:
        if len(pair) == 2:
            m, n = pair
            if m.distance <= max_distance and m.distance < distance_ratio * n.distance:
                good.append(m)
        elif len(pair) == 1 and pair[0].distance <= max_distance:
            good.append(pair[0])

    good.sort(key=lambda m: (m.distance, m.queryIdx))
    logger.debug(f"{len(good)} of {len(knn)} matches passed the ratio test")
    return good


def match_images(extractor: OrbExtractor,
                 image1: np.ndarray,
                 image2: np.ndarray,
                 distance_ratio: float = DEFAULT_DISTANCE_RATIO) -> MatchResult:
    """Extract features from both images and match them directly."""
    features1 = extractor.extract(image1)
    features2 = extractor.extract(image2)
    matches = match_descriptors(features1.descriptors, features2.descriptors,
                                distance_ratio)
    logger.info(
        f"Matched {len(features1)} x {len(features2)} features: "
        f"{len(matches)} good matches"
    )
    return MatchResult(features1, features2, matches)
