"""
Multiscale ORB keypoint and descriptor extraction.

Builds an image pyramid, detects FAST corners per level on a grid of
cells with an adaptive threshold, spreads them uniformly with a quadtree,
orients each keypoint by its intensity centroid and describes it with a
256-bit rotated BRIEF descriptor.

Pyramid levels are independent of each other, so each level is a pure
function of its level image and can run on a worker thread; results are
merged in level order and truncated to the strongest n_features.
"""

import math
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .errors import InvalidImage
from .preprocessing import to_grayscale, load_image

logger = logging.getLogger(__name__)

PATCH_SIZE = 31
HALF_PATCH_SIZE = 15
EDGE_THRESHOLD = 19
DESCRIPTOR_BITS = 256
DESCRIPTOR_SIZE = DESCRIPTOR_BITS // 8

# Side of the grid cells FAST is run on
CELL_SIZE = 35

# Bounds quadtree depth when points coincide
MAX_SPLIT_ROUNDS = 64

# Seed of the canonical BRIEF sampling pattern; changing it invalidates
# every stored descriptor.
PATTERN_SEED = 0x0B5EED
PATTERN_RADIUS = 13


@dataclass(frozen=True)
class Keypoint:
    """A detected corner, with coordinates expressed at pyramid level 0."""

    x: float
    y: float
    level: int
    angle: float
    response: float
    size: float

    def to_cv(self) -> cv2.KeyPoint:
        return cv2.KeyPoint(self.x, self.y, self.size, self.angle,
                            self.response, self.level)


@dataclass
class Features:
    """Keypoints paired 1:1, in order, with the rows of a descriptor matrix."""

    keypoints: List[Keypoint]
    descriptors: np.ndarray

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def empty(cls) -> "Features":
        return cls([], np.zeros((0, DESCRIPTOR_SIZE), dtype=np.uint8))


def _canonical_pattern() -> np.ndarray:
    """
    Fixed BRIEF test locations: 256 point pairs inside the 31x31 patch.

    Points follow an isotropic Gaussian (sigma = patch / 5) around the
    keypoint, the sampling that works best for BRIEF, clipped so that any
    rotation stays inside EDGE_THRESHOLD.

    Returns:
        int array of shape (512, 2) holding (x, y); rows 2i and 2i+1 form
        the i-th comparison.
    """
    rng = np.random.RandomState(PATTERN_SEED)
    points = rng.normal(scale=PATCH_SIZE / 5.0, size=(2 * DESCRIPTOR_BITS, 2))
    points = np.clip(np.rint(points), -PATTERN_RADIUS, PATTERN_RADIUS)
    return points.astype(np.int32)


def _centroid_offsets() -> Tuple[np.ndarray, np.ndarray]:
    """Pixel offsets (u, v) of the circular patch used for orientation."""
    v, u = np.mgrid[-HALF_PATCH_SIZE:HALF_PATCH_SIZE + 1,
                    -HALF_PATCH_SIZE:HALF_PATCH_SIZE + 1]
    inside = u * u + v * v <= HALF_PATCH_SIZE * HALF_PATCH_SIZE
    return u[inside].astype(np.int32), v[inside].astype(np.int32)


BRIEF_PATTERN = _canonical_pattern()
_CIRCLE_U, _CIRCLE_V = _centroid_offsets()


class OrbExtractor:
    """
    ORB feature extractor with adaptive FAST thresholds and quadtree
    keypoint distribution.
    """

    def __init__(self,
                 n_features: int = 500,
                 scale_factor: float = 1.2,
                 n_levels: int = 8,
                 ini_th_fast: int = 20,
                 min_th_fast: int = 7,
                 parallel: bool = False):
        if n_features <= 0:
            raise ValueError("n_features must be positive")
        if scale_factor <= 1.0:
            raise ValueError("scale_factor must be greater than 1")
        if n_levels <= 0:
            raise ValueError("n_levels must be positive")

        self.n_features = n_features
        self.scale_factor = scale_factor
        self.n_levels = n_levels
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast
        self.parallel = parallel

        self.scale_factors = [scale_factor ** i for i in range(n_levels)]
        self.features_per_level = self._level_quotas()

        self._fast_ini = cv2.FastFeatureDetector_create(ini_th_fast, True)
        self._fast_min = cv2.FastFeatureDetector_create(min_th_fast, True)

    @classmethod
    def from_config(cls, config, parallel: Optional[bool] = None) -> "OrbExtractor":
        if parallel is None:
            parallel = config.workers > 1
        return cls(
            n_features=config.orb_nfeatures,
            scale_factor=config.orb_scale_factor,
            n_levels=config.orb_nlevels,
            ini_th_fast=config.orb_ini_th_fast,
            min_th_fast=config.orb_min_th_fast,
            parallel=parallel,
        )

    def _level_quotas(self) -> List[int]:
        """Split n_features across levels in proportion to level area."""
        factor = 1.0 / (self.scale_factor ** 2)
        if self.n_levels == 1:
            return [self.n_features]

        per_scale = self.n_features * (1 - factor) / (1 - factor ** self.n_levels)
        quotas = []
        total = 0
        for _ in range(self.n_levels - 1):
            quota = int(round(per_scale))
            quotas.append(quota)
            total += quota
            per_scale *= factor
        quotas.append(max(self.n_features - total, 0))
        return quotas

    def build_pyramid(self, gray: np.ndarray) -> List[np.ndarray]:
        """Each level is the previous one downsampled by scale_factor."""
        height, width = gray.shape[:2]
        pyramid = [gray]
        for level in range(1, self.n_levels):
            scale = 1.0 / self.scale_factors[level]
            size = (int(round(width * scale)), int(round(height * scale)))
            if size[0] < 1 or size[1] < 1:
                break
            pyramid.append(cv2.resize(pyramid[-1], size,
                                      interpolation=cv2.INTER_LINEAR))
        return pyramid

    def extract(self, image_np: np.ndarray) -> Features:
        """
        Extract oriented keypoints and binary descriptors from an image.

        Args:
            image_np: Decoded image (grayscale, BGR or BGRA).

        Returns:
            Features ordered by descending corner response, at most
            n_features long. Empty if the image has no usable corners.

        Raises:
            InvalidImage: If the array is not a decodable image.
        """
        gray = to_grayscale(image_np)
        pyramid = self.build_pyramid(gray)

        if self.parallel and len(pyramid) > 1:
            with ThreadPoolExecutor(max_workers=len(pyramid)) as pool:
                per_level = list(pool.map(self._process_level,
                                          range(len(pyramid)), pyramid))
        else:
            per_level = [self._process_level(level, img)
                         for level, img in enumerate(pyramid)]

        keypoints: List[Keypoint] = []
        descriptors = []
        for level_keypoints, level_descriptors in per_level:
            keypoints.extend(level_keypoints)
            descriptors.append(level_descriptors)

        if not keypoints:
            logger.debug("No corners found in image")
            return Features.empty()

        matrix = np.vstack(descriptors)
        responses = np.array([kp.response for kp in keypoints], dtype=np.float64)
        order = np.argsort(-responses, kind="stable")[:self.n_features]

        logger.debug(f"Extracted {len(order)} ORB features "
                     f"from {len(keypoints)} candidates")
        return Features([keypoints[i] for i in order],
                        np.ascontiguousarray(matrix[order]))

    def extract_file(self, path: str) -> Features:
        """Load an image file and extract its features."""
        return self.extract(load_image(path))

    # Per-level pipeline

    def _process_level(self, level: int, image: np.ndarray
                       ) -> Tuple[List[Keypoint], np.ndarray]:
        quota = self.features_per_level[level]
        points, responses = self._detect_level(image)
        if quota == 0 or len(points) == 0:
            return [], np.zeros((0, DESCRIPTOR_SIZE), dtype=np.uint8)

        height, width = image.shape[:2]
        min_border = EDGE_THRESHOLD - 3
        keep = distribute_quadtree(
            points, responses,
            (min_border, min_border, width - min_border, height - min_border),
            quota,
        )
        points = points[keep]
        responses = responses[keep]

        # Strongest first, then raster order for determinism
        order = np.lexsort((points[:, 0], points[:, 1], -responses))
        points = points[order]
        responses = responses[order]

        angles = intensity_centroid_angles(image, points)
        blurred = cv2.GaussianBlur(image, (7, 7), 2, 2,
                                   borderType=cv2.BORDER_REFLECT_101)
        descriptors = compute_brief(blurred, points, angles)

        scale = self.scale_factors[level]
        keypoints = [
            Keypoint(x=float(x) * scale, y=float(y) * scale, level=level,
                     angle=float(angle), response=float(response),
                     size=PATCH_SIZE * scale)
            for (x, y), angle, response in zip(points, angles, responses)
        ]
        return keypoints, descriptors

    def _detect_level(self, image: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Run FAST cell by cell, falling back to the minimum threshold for
        cells where the initial threshold finds nothing.

        Returns:
            (points, responses): int (n, 2) x/y coordinates in level pixels
            and float responses, de-duplicated across overlapping cells.
        """
        height, width = image.shape[:2]
        min_border = EDGE_THRESHOLD - 3
        max_x = width - EDGE_THRESHOLD + 3
        max_y = height - EDGE_THRESHOLD + 3
        span_x = max_x - min_border
        span_y = max_y - min_border
        if span_x <= 6 or span_y <= 6:
            return np.zeros((0, 2), dtype=np.int32), np.zeros(0)

        n_cols = max(1, span_x // CELL_SIZE)
        n_rows = max(1, span_y // CELL_SIZE)
        cell_w = int(math.ceil(span_x / n_cols))
        cell_h = int(math.ceil(span_y / n_rows))

        found = {}
        for row in range(n_rows):
            y0 = min_border + row * cell_h
            if y0 >= max_y - 3:
                continue
            y1 = min(y0 + cell_h + 6, max_y)
            for col in range(n_cols):
                x0 = min_border + col * cell_w
                if x0 >= max_x - 6:
                    continue
                x1 = min(x0 + cell_w + 6, max_x)

                cell = np.ascontiguousarray(image[y0:y1, x0:x1])
                corners = self._fast_ini.detect(cell)
                if not corners and self.min_th_fast < self.ini_th_fast:
                    corners = self._fast_min.detect(cell)

                for kp in corners:
                    key = (int(round(kp.pt[0])) + x0, int(round(kp.pt[1])) + y0)
                    if kp.response > found.get(key, -1.0):
                        found[key] = kp.response

        if not found:
            return np.zeros((0, 2), dtype=np.int32), np.zeros(0)

        points = np.array(list(found.keys()), dtype=np.int32)
        responses = np.array(list(found.values()), dtype=np.float64)
        return points, responses


def distribute_quadtree(points: np.ndarray,
                        responses: np.ndarray,
                        bounds: Sequence[float],
                        target: int) -> np.ndarray:
    """
    Spread keypoints uniformly by recursive quadrant splitting.

    The region is divided into roughly square root nodes, then nodes
    holding more than one point are split into quadrants until there are
    at least `target` nodes or nothing more can be split. When a full
    round of splits would overshoot, the most populated nodes are split
    first. Each final node keeps its strongest point.

    Args:
        points: (n, 2) x/y coordinates, unique.
        responses: (n,) corner strengths.
        bounds: (x0, y0, x1, y1) region, half-open.
        target: Desired number of retained points.

    Returns:
        Indices into `points` of the retained keypoints.
    """
    n_points = len(points)
    if n_points == 0 or target <= 0:
        return np.zeros(0, dtype=np.int64)

    x0, y0, x1, y1 = (float(b) for b in bounds)
    xs = points[:, 0].astype(np.float64)
    ys = points[:, 1].astype(np.float64)

    n_roots = max(1, int(round((x1 - x0) / max(y1 - y0, 1.0))))
    root_w = (x1 - x0) / n_roots
    nodes = []
    all_idx = np.arange(n_points)
    for i in range(n_roots):
        rx0 = x0 + i * root_w
        rx1 = x1 if i == n_roots - 1 else rx0 + root_w
        mask = (xs >= rx0) & (xs < rx1) if i < n_roots - 1 else (xs >= rx0)
        idx = all_idx[mask]
        if len(idx):
            nodes.append((rx0, y0, rx1, y1, idx))

    def split(node):
        nx0, ny0, nx1, ny1, idx = node
        mx = (nx0 + nx1) / 2.0
        my = (ny0 + ny1) / 2.0
        left = xs[idx] < mx
        top = ys[idx] < my
        children = []
        for cx0, cx1, in_x in ((nx0, mx, left), (mx, nx1, ~left)):
            for cy0, cy1, in_y in ((ny0, my, top), (my, ny1, ~top)):
                child = idx[in_x & in_y]
                if len(child):
                    children.append((cx0, cy0, cx1, cy1, child))
        return children

    for _ in range(MAX_SPLIT_ROUNDS):
        if len(nodes) >= target:
            break
        expandable = [n for n in nodes if len(n[4]) > 1]
        if not expandable:
            break

        settled = [n for n in nodes if len(n[4]) <= 1]
        if len(nodes) + 3 * len(expandable) <= target:
            next_nodes = settled
            for node in expandable:
                next_nodes.extend(split(node))
        else:
            # Split densest nodes first until the target is reached
            expandable.sort(key=lambda n: -len(n[4]))
            next_nodes = settled + expandable
            count = len(next_nodes)
            for i, node in enumerate(expandable):
                if count >= target:
                    break
                children = split(node)
                next_nodes[len(settled) + i] = None
                next_nodes.extend(children)
                count += len(children) - 1
            next_nodes = [n for n in next_nodes if n is not None]

        nodes = next_nodes

    keep = [idx[np.argmax(responses[idx])] for _, _, _, _, idx in nodes]
    return np.array(sorted(keep), dtype=np.int64)


def intensity_centroid_angles(image: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Orientation of each keypoint from the intensity centroid of a circular
    patch of radius HALF_PATCH_SIZE, in degrees within [0, 360).
    """
    if len(points) == 0:
        return np.zeros(0)

    height, width = image.shape[:2]
    cols = np.clip(points[:, 0:1] + _CIRCLE_U[None, :], 0, width - 1)
    rows = np.clip(points[:, 1:2] + _CIRCLE_V[None, :], 0, height - 1)
    values = image[rows, cols].astype(np.float64)

    m_10 = values @ _CIRCLE_U.astype(np.float64)
    m_01 = values @ _CIRCLE_V.astype(np.float64)
    return np.degrees(np.arctan2(m_01, m_10)) % 360.0


def compute_brief(blurred: np.ndarray, points: np.ndarray,
                  angles: np.ndarray) -> np.ndarray:
    """
    Rotated BRIEF: for each keypoint, rotate the canonical pattern by its
    angle and set bit i when the first sample of pair i is darker than the
    second. Bits are packed least-significant first.

    Returns:
        uint8 array of shape (n, DESCRIPTOR_SIZE).
    """
    if len(points) == 0:
        return np.zeros((0, DESCRIPTOR_SIZE), dtype=np.uint8)

    height, width = blurred.shape[:2]
    theta = np.radians(angles)
    cos_a = np.cos(theta)[:, None]
    sin_a = np.sin(theta)[:, None]

    px = BRIEF_PATTERN[:, 0][None, :].astype(np.float64)
    py = BRIEF_PATTERN[:, 1][None, :].astype(np.float64)
    cols = points[:, 0:1] + np.rint(px * cos_a - py * sin_a).astype(np.int64)
    rows = points[:, 1:2] + np.rint(px * sin_a + py * cos_a).astype(np.int64)
    cols = np.clip(cols, 0, width - 1)
    rows = np.clip(rows, 0, height - 1)

    samples = blurred[rows, cols]
    bits = samples[:, 0::2] < samples[:, 1::2]
    return np.packbits(bits, axis=1, bitorder="little")
