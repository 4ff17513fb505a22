"""Tests for ORB keypoint and descriptor extraction."""

import numpy as np
import pytest

from imsearch.errors import InvalidImage
from imsearch.orb_extractor import (
    BRIEF_PATTERN, DESCRIPTOR_SIZE, EDGE_THRESHOLD, OrbExtractor,
    distribute_quadtree, intensity_centroid_angles,
)

from conftest import make_noise_image


class TestExtract:
    """Tests for the full extraction pipeline."""

    def test_descriptor_shape_and_dtype(self, noise_image):
        features = OrbExtractor(n_features=200).extract(noise_image)
        assert features.descriptors.dtype == np.uint8
        assert features.descriptors.shape == (len(features), DESCRIPTOR_SIZE)
        assert len(features) > 0

    def test_respects_feature_cap(self, noise_image):
        features = OrbExtractor(n_features=500).extract(noise_image)
        assert 0 < len(features) <= 500

        small = OrbExtractor(n_features=50).extract(noise_image)
        assert len(small) <= 50

    def test_ordered_by_response(self, noise_image):
        features = OrbExtractor(n_features=300).extract(noise_image)
        responses = [kp.response for kp in features.keypoints]
        assert responses == sorted(responses, reverse=True)

    def test_deterministic(self, noise_image):
        extractor = OrbExtractor(n_features=300)
        first = extractor.extract(noise_image)
        second = extractor.extract(noise_image.copy())
        assert np.array_equal(first.descriptors, second.descriptors)
        assert first.keypoints == second.keypoints

    def test_parallel_matches_sequential(self, shapes_image):
        sequential = OrbExtractor(n_features=300).extract(shapes_image)
        parallel = OrbExtractor(n_features=300, parallel=True).extract(shapes_image)
        assert np.array_equal(sequential.descriptors, parallel.descriptors)

    def test_keypoints_inside_image(self, noise_image):
        features = OrbExtractor(n_features=300).extract(noise_image)
        h, w = noise_image.shape
        for kp in features.keypoints:
            assert 0 <= kp.x < w
            assert 0 <= kp.y < h
            assert 0 <= kp.angle < 360
            assert 0 <= kp.level < 8

    def test_uses_several_pyramid_levels(self, noise_image):
        features = OrbExtractor(n_features=500).extract(noise_image)
        assert len({kp.level for kp in features.keypoints}) > 1

    def test_blank_image_is_empty_not_error(self, blank_image):
        features = OrbExtractor().extract(blank_image)
        assert len(features) == 0
        assert features.descriptors.shape == (0, DESCRIPTOR_SIZE)

    def test_tiny_image_is_empty(self):
        tiny = make_noise_image(3, size=(20, 20))
        assert len(OrbExtractor().extract(tiny)) == 0

    def test_accepts_color_input(self, shapes_image):
        features = OrbExtractor(n_features=200).extract(shapes_image)
        assert len(features) > 0

    def test_rejects_empty_array(self):
        with pytest.raises(InvalidImage):
            OrbExtractor().extract(np.zeros((0, 0), dtype=np.uint8))

    def test_rejects_unreadable_file(self, tmp_path):
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"definitely not a jpeg")
        with pytest.raises(InvalidImage):
            OrbExtractor().extract_file(str(bad))

    def test_rejects_missing_file(self, tmp_path):
        with pytest.raises(InvalidImage, match="No such image"):
            OrbExtractor().extract_file(str(tmp_path / "missing.png"))

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            OrbExtractor(scale_factor=1.0)
        with pytest.raises(ValueError):
            OrbExtractor(n_features=0)


class TestLevelQuotas:
    """Tests for the per-level feature budget."""

    def test_quotas_sum_to_total(self):
        extractor = OrbExtractor(n_features=500, n_levels=8)
        assert sum(extractor.features_per_level) == 500

    def test_quotas_decrease_with_level(self):
        quotas = OrbExtractor(n_features=1000, n_levels=6).features_per_level
        assert all(a >= b for a, b in zip(quotas[:-2], quotas[1:-1]))

    def test_single_level(self):
        assert OrbExtractor(n_features=42, n_levels=1).features_per_level == [42]


class TestDistributeQuadtree:
    """Tests for spatial keypoint distribution."""

    def test_keeps_strongest_in_cluster(self):
        # Tight cluster plus isolated points, target allows one per region
        points = np.array([[10, 10], [11, 10], [10, 11], [90, 90], [90, 10]])
        responses = np.array([5.0, 9.0, 1.0, 3.0, 2.0])
        keep = distribute_quadtree(points, responses, (0, 0, 100, 100), 3)
        assert 1 in keep
        assert 3 in keep and 4 in keep
        assert 0 not in keep and 2 not in keep

    def test_spreads_instead_of_clustering(self):
        rng = np.random.RandomState(0)
        cluster = rng.randint(0, 20, (200, 2))
        spread = np.array([[x, y] for x in range(25, 100, 25) for y in range(25, 100, 25)])
        points = np.unique(np.vstack([cluster, spread]), axis=0)
        # Cluster corners are much stronger than the spread ones
        responses = np.where(points.max(axis=1) < 20, 100.0, 1.0)
        keep = distribute_quadtree(points, responses, (0, 0, 100, 100), 16)
        kept = points[keep]
        assert np.sum(kept.max(axis=1) >= 25) >= 5

    def test_never_more_points_than_input(self):
        points = np.array([[1, 1], [50, 50]])
        keep = distribute_quadtree(points, np.ones(2), (0, 0, 100, 100), 10)
        assert sorted(keep.tolist()) == [0, 1]

    def test_empty(self):
        keep = distribute_quadtree(np.zeros((0, 2), dtype=int), np.zeros(0),
                                   (0, 0, 10, 10), 5)
        assert len(keep) == 0

    def test_duplicate_points_terminate(self):
        points = np.array([[5, 5]] * 4)
        keep = distribute_quadtree(points, np.arange(4.0), (0, 0, 10, 10), 4)
        assert keep.tolist() == [3]


class TestOrientation:
    """Tests for intensity centroid orientation and pattern."""

    def test_bright_right_half_points_to_zero_degrees(self):
        img = np.zeros((60, 60), dtype=np.uint8)
        img[:, 30:] = 255
        angle = intensity_centroid_angles(img, np.array([[30, 30]]))[0]
        assert angle < 5 or angle > 355

    def test_bright_bottom_half_points_to_ninety_degrees(self):
        img = np.zeros((60, 60), dtype=np.uint8)
        img[30:, :] = 255
        angle = intensity_centroid_angles(img, np.array([[30, 30]]))[0]
        assert abs(angle - 90) < 5

    def test_pattern_fits_inside_border(self):
        assert BRIEF_PATTERN.shape == (512, 2)
        reach = np.sqrt((BRIEF_PATTERN.astype(float) ** 2).sum(axis=1)).max()
        assert reach < EDGE_THRESHOLD
