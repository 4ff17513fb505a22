"""Tests for the search engine."""

import numpy as np
import pytest

from imsearch.config import SearchConfig
from imsearch.engine import INDEX_FILE, SearchEngine
from imsearch.errors import DatabaseCorrupt, IndexBuildFailure, IndexNotBuilt
from imsearch.lsh_index import LshIndex

from conftest import make_noise_image, make_shapes_image


@pytest.fixture
def images():
    return {
        "noise-a": make_noise_image(21),
        "noise-b": make_noise_image(22),
        "shapes-c": make_shapes_image(23),
    }


@pytest.fixture
def engine(config, store, extractor, images):
    for image_id, image in images.items():
        store.append(image_id, extractor.extract(image).descriptors)
    engine = SearchEngine(config, store=store, extractor=extractor)
    engine.build_index()
    return engine


class TestSearch:
    """End-to-end retrieval over an indexed store."""

    @pytest.mark.parametrize("image_id", ["noise-a", "noise-b", "shapes-c"])
    def test_self_match_ranks_first(self, engine, images, image_id):
        results = engine.search(images[image_id])
        assert results[0].image_id == image_id
        assert results[0].score == len(engine.store.get(image_id))

    def test_self_match_with_default_checks(self, config, store, extractor, images):
        config = config.with_overrides(flann_checks=32, batch_size=5_000_000)
        for image_id, image in images.items():
            store.append(image_id, extractor.extract(image).descriptors)
        engine = SearchEngine(config, store=store, extractor=extractor)
        engine.build_index()
        assert engine.search(images["noise-b"])[0].image_id == "noise-b"

    def test_newest_image_found_in_large_store(self, config, store):
        # Own buckets hold far more than flann_checks rows at this size
        config = SearchConfig(db_path=config.db_path)
        rng = np.random.RandomState(5)
        for i in range(300):
            store.append(f"img{i:03d}", rng.randint(0, 256, (500, 32)).astype(np.uint8))
        engine = SearchEngine(config, store=store)
        engine.build_index()

        for image_id in ("img000", "img150", "img299"):
            results = engine.search_descriptors(store.get(image_id))
            assert results[0].image_id == image_id
            assert results[0].score == 500

    def test_output_count_truncates(self, engine, images):
        engine.config = engine.config.with_overrides(output_count=1)
        assert len(engine.search(images["noise-a"])) == 1

    def test_batch_size_does_not_change_ranking(self, engine, images):
        baseline = engine.search(images["shapes-c"])
        for batch_size in (97, 10_000):
            engine.config = engine.config.with_overrides(batch_size=batch_size)
            assert engine.search(images["shapes-c"]) == baseline

    def test_workers_match_sequential(self, engine, images):
        baseline = engine.search(images["noise-a"])
        engine.config = engine.config.with_overrides(workers=3)
        assert engine.search(images["noise-a"]) == baseline

    def test_weighted_scores(self, engine, images):
        engine.score_mode = "weighted"
        results = engine.search(images["noise-a"])
        assert results[0].image_id == "noise-a"
        assert results[0].score == pytest.approx(len(engine.store.get("noise-a")))

    def test_featureless_query_returns_nothing(self, engine, blank_image):
        assert engine.search(blank_image) == []

    def test_search_file(self, engine, tmp_path, images):
        import cv2
        path = str(tmp_path / "query.png")
        cv2.imwrite(path, images["noise-b"])
        assert engine.search_file(path)[0].image_id == "noise-b"


class TestIndexLifecycle:
    """Index states, persistence and atomic replacement."""

    def test_search_requires_index(self, config, store, extractor, noise_image):
        engine = SearchEngine(config, store=store, extractor=extractor)
        assert engine.index_state == "missing"
        with pytest.raises(IndexNotBuilt):
            engine.search(noise_image)

    def test_stale_after_append(self, engine, extractor, images):
        assert engine.index_state == "fresh"
        late = make_noise_image(99)
        engine.store.append("late", extractor.extract(late).descriptors)
        assert engine.index_state == "stale"

        # Unindexed image is not searchable until rebuild
        assert all(r.image_id != "late" for r in engine.search(late))

        engine.build_index()
        assert engine.index_state == "fresh"
        assert engine.search(late)[0].image_id == "late"

    def test_index_reloaded_from_disk(self, engine, config, images):
        reopened = SearchEngine(config, store=engine.store, extractor=engine.extractor)
        assert reopened.index_state == "fresh"
        assert reopened.search(images["noise-a"]) == engine.search(images["noise-a"])

    def test_failed_build_keeps_previous_index(self, engine, monkeypatch, images):
        previous = engine.index
        baseline = engine.search(images["noise-a"])

        def fail(*args, **kwargs):
            raise IndexBuildFailure("out of memory")

        monkeypatch.setattr(LshIndex, "build", fail)
        with pytest.raises(IndexBuildFailure):
            engine.build_index()

        assert engine.index is previous
        assert engine.search(images["noise-a"]) == baseline

    def test_index_from_other_store_is_corrupt(self, engine, config, tmp_path):
        from imsearch.store import DescriptorStore
        import shutil

        other = DescriptorStore.open(str(tmp_path / "other.db"), 32)
        other.append("only", np.zeros((3, 32), dtype=np.uint8))
        shutil.copy(engine.index_path, str(tmp_path / "other.db" / INDEX_FILE))
        with pytest.raises(DatabaseCorrupt):
            SearchEngine(config, store=other, extractor=engine.extractor)

    def test_recall_estimate(self, engine):
        assert 0.0 < engine.estimate_recall(sample_size=20) <= 1.0
