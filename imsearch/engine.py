"""
Image search engine.

Orchestrates the retrieval pipeline:
    1. Extract ORB descriptors from the query image
    2. Stream the indexed store snapshot in bounded batches
    3. Query the LSH index per batch for each query descriptor's k nearest
       stored descriptors, keeping the k best across batches
    4. Vote for the images owning those neighbours and rank

The LSH index is rebuilt only on request (build_index). A built index is
immutable; rebuilding publishes a new one by swapping the reference, so
searches already running keep the index they started with. Appends made
after the last build are not searchable until the next build.
"""

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from typing import List, Optional

import numpy as np

from .config import SearchConfig
from .errors import DatabaseCorrupt, IndexBuildFailure, IndexNotBuilt
from .lsh_index import LshIndex, Neighbor, estimate_recall
from .orb_extractor import DESCRIPTOR_SIZE, OrbExtractor
from .scoring import SearchResult, VoteCounter
from .store import DescriptorStore

logger = logging.getLogger(__name__)

INDEX_FILE = "lsh_index.npz"

# Fixed so that rebuilding an unchanged store yields the same index
INDEX_SEED = 42


class SearchEngine:
    """
    Ranks stored images by how many query descriptors find them among
    their approximate nearest neighbours.
    """

    def __init__(self,
                 config: SearchConfig,
                 store: Optional[DescriptorStore] = None,
                 extractor: Optional[OrbExtractor] = None,
                 score_mode: str = "votes"):
        """
        Open the store and load the last published index, if any.

        Args:
            config: Validated configuration.
            store: Already opened store; opened from config.db_path if None.
            extractor: Feature extractor; built from config if None.
            score_mode: "votes" (default) or "weighted".
        """
        self.config = config
        self.store = store or DescriptorStore.open(config.db_path, DESCRIPTOR_SIZE)
        self.extractor = extractor or OrbExtractor.from_config(config)
        self.score_mode = score_mode
        self.index_path = os.path.join(self.store.path, INDEX_FILE)

        self._index: Optional[LshIndex] = None
        self._index_lock = threading.Lock()

        if os.path.exists(self.index_path):
            index = LshIndex.load(self.index_path)
            self._check_index(index)
            self._index = index
            logger.info(f"Loaded LSH index: {index.descriptor_count} descriptors, "
                        f"{index.image_count} images ({self.index_state})")
        else:
            logger.info("No LSH index built yet")

    def _check_index(self, index: LshIndex) -> None:
        if index.descriptor_size != self.store.descriptor_size:
            raise DatabaseCorrupt(
                f"Index built for {index.descriptor_size}-byte descriptors, "
                f"store holds {self.store.descriptor_size}"
            )
        records = self.store.records()
        if index.image_count > len(records):
            raise DatabaseCorrupt("Index refers to images missing from the store")
        indexed_stop = records[index.image_count - 1].stop if index.image_count else 0
        if indexed_stop != index.descriptor_count:
            raise DatabaseCorrupt(
                f"Index covers {index.descriptor_count} descriptors but its "
                f"{index.image_count} images hold {indexed_stop}"
            )

    @property
    def index(self) -> Optional[LshIndex]:
        return self._index

    @property
    def index_state(self) -> str:
        """'missing', 'stale' (store changed since the build) or 'fresh'."""
        index = self._index
        if index is None:
            return "missing"
        if index.image_count != self.store.image_count:
            return "stale"
        return "fresh"

    def build_index(self) -> LshIndex:
        """
        Build an index over the current store snapshot, persist it and make
        it the live index.

        Raises:
            IndexBuildFailure: If building or saving fails. The previous
                index stays live and on disk.
        """
        snapshot = self.store.snapshot()
        index = LshIndex.build(
            snapshot,
            table_count=self.config.flann_table_number,
            key_size=self.config.flann_key_size,
            batch_size=min(self.config.batch_size, 1_000_000),
            seed=INDEX_SEED,
        )
        try:
            index.save(self.index_path)
        except OSError as e:
            raise IndexBuildFailure(f"Could not save index to {self.index_path}: {e}") from e

        with self._index_lock:
            self._index = index
        return index

    def estimate_recall(self, sample_size: int = 100) -> float:
        """Recall of the live index against exact search on stored samples."""
        index = self._require_index()
        return estimate_recall(
            index, self.store.snapshot(), sample_size,
            k=self.config.knn_k,
            probe_level=self.config.flann_probe_level,
            checks=self.config.flann_checks,
            eps=self.config.flann_eps,
        )

    def _require_index(self) -> LshIndex:
        index = self._index
        if index is None:
            raise IndexNotBuilt(
                f"No index for {self.store.path}; run build-index first"
            )
        return index

    def search(self, image_np: np.ndarray) -> List[SearchResult]:
        """
        Find stored images similar to a decoded query image.

        Returns:
            Up to output_count results, best first; ties ordered by id.

        Raises:
            InvalidImage: If the query cannot be processed.
            IndexNotBuilt: If no index has been built for the store.
        """
        features = self.extractor.extract(image_np)
        return self.search_descriptors(features.descriptors)

    def search_file(self, path: str) -> List[SearchResult]:
        features = self.extractor.extract_file(path)
        return self.search_descriptors(features.descriptors)

    def search_descriptors(self, query: np.ndarray) -> List[SearchResult]:
        """Rank stored images against an already extracted descriptor matrix."""
        index = self._require_index()
        if self.index_state == "stale":
            logger.warning(
                f"LSH index covers {index.image_count} of "
                f"{self.store.image_count} images; rebuild to search the rest"
            )

        if len(query) == 0:
            logger.warning("No ORB features in query image")
            return []

        snapshot = self.store.snapshot()
        k = self.config.knn_k
        best: List[List[Neighbor]] = [[] for _ in range(len(query))]

        def query_batch(batch):
            return index.query_many(
                query, k, batch.descriptors, batch.start,
                probe_level=self.config.flann_probe_level,
                checks=self.config.flann_checks,
                eps=self.config.flann_eps,
            )

        batches = snapshot.iter_batches(self.config.batch_size,
                                        stop=index.descriptor_count)
        n_batches = 0
        for per_query in self._map_batches(query_batch, batches):
            n_batches += 1
            for q, neighbors in enumerate(per_query):
                if neighbors:
                    merged = best[q] + neighbors
                    merged.sort(key=lambda n: (n.distance, n.offset))
                    best[q] = merged[:k]

        counter = VoteCounter(self.score_mode, snapshot.descriptor_size * 8)
        for neighbors in best:
            if not neighbors:
                continue
            offsets = [n.offset for n in neighbors]
            counter.add(snapshot.image_ids_for(offsets),
                        [n.distance for n in neighbors])

        results = counter.results()[:self.config.output_count]
        logger.info(
            f"Search complete: {len(query)} query descriptors, "
            f"{n_batches} batches -> {len(results)} results"
        )
        return results

    def _map_batches(self, fn, batches):
        """
        Apply fn to each batch, in order. With several workers, at most
        `workers` batches are in memory at once.
        """
        workers = self.config.workers
        if workers <= 1:
            for batch in batches:
                yield fn(batch)
            return

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while True:
                window = list(islice(batches, workers))
                if not window:
                    break
                yield from pool.map(fn, window)
