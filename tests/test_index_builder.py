"""Tests for bulk image ingestion."""

import os

import numpy as np
import pytest

from imsearch.errors import NotFound
from imsearch.index_builder import add_images, content_hash, find_images, parse_suffixes
from imsearch.orb_extractor import OrbExtractor

from conftest import make_noise_image, write_image


class TestFindImages:
    """Tests for file discovery."""

    def test_walks_tree_case_insensitively(self, image_dir):
        root, expected = image_dir
        assert find_images(root) == expected

    def test_suffix_filter(self, image_dir):
        root, _ = image_dir
        assert find_images(root, ("txt",)) == [os.path.join(root, "notes.txt")]

    def test_single_file_returned_as_is(self, image_dir):
        root, _ = image_dir
        path = os.path.join(root, "notes.txt")
        assert find_images(path) == [os.path.abspath(path)]

    def test_missing_path(self, tmp_path):
        with pytest.raises(NotFound):
            find_images(str(tmp_path / "nowhere"))

    def test_parse_suffixes(self):
        assert parse_suffixes("jpg, .PNG,,") == ("jpg", "png")
        assert parse_suffixes(["JPEG"]) == ("jpeg",)


class TestAddImages:
    """Tests for add_images."""

    def test_empty_directory(self, store, extractor, tmp_path):
        summary = add_images(store, extractor, str(tmp_path))
        assert summary.processed == 0
        assert store.image_count == 0

    def test_adds_every_image(self, store, extractor, image_dir):
        root, expected = image_dir
        summary = add_images(store, extractor, root)

        assert summary.added == expected
        assert summary.failed == []
        assert store.image_count == 3
        assert summary.descriptors == store.descriptor_count
        assert [r.image_id for r in store.records()] == expected

    def test_records_content_hash(self, store, extractor, image_dir):
        root, expected = image_dir
        add_images(store, extractor, root)
        assert store.record(expected[0]).source == content_hash(expected[0])
        assert content_hash(expected[0]).startswith("sha256:")

    def test_second_run_reports_duplicates(self, store, extractor, image_dir):
        root, expected = image_dir
        add_images(store, extractor, root)
        summary = add_images(store, extractor, root)
        assert summary.added == []
        assert summary.duplicates == expected
        assert store.image_count == 3

    def test_bad_file_does_not_abort(self, store, extractor, image_dir):
        root, expected = image_dir
        broken = os.path.join(root, "broken.png")
        with open(broken, "wb") as f:
            f.write(b"\x89PNG but not really")

        summary = add_images(store, extractor, root)
        assert [p for p, _ in summary.failed] == [broken]
        assert summary.added == expected
        assert broken not in store

    def test_stored_descriptors_match_extraction(self, store, extractor, tmp_path):
        path = write_image(tmp_path / "one.jpg", make_noise_image(5))
        add_images(store, extractor, path)
        expected = extractor.extract_file(os.path.abspath(path)).descriptors
        assert np.array_equal(store.get(os.path.abspath(path)), expected)

    def test_feature_cap_honoured(self, store, tmp_path):
        path = write_image(tmp_path / "one.png", make_noise_image(6))
        add_images(store, OrbExtractor(n_features=500), path)
        assert 0 < store.descriptor_count <= 500
