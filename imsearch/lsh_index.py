"""
Multi-probe locality sensitive hashing over binary descriptors.

Each of the `table_count` tables hashes a descriptor by reading `key_size`
fixed bit positions, sampled once per table. Two descriptors at small
Hamming distance agree on those bits with high probability, so their
neighbours are found by looking up the query's own bucket and, with
multi-probe, the buckets that differ from it by a few flipped bits.

A table is stored as one sorted uint64 array packing (bucket, offset) as
`bucket << 40 | offset`. A bucket is therefore a contiguous slice found by
binary search, and the part of a bucket falling inside an offset range is
found the same way, which is what lets the search engine query the index
one store batch at a time.

Indexes are immutable: build() returns a new index for a store snapshot
and nothing ever patches an existing one.
"""

import os
import json
import logging
import zipfile
from dataclasses import dataclass
from itertools import combinations
from typing import List, Sequence, Tuple

import faiss
import numpy as np

from .errors import DatabaseCorrupt, IndexBuildFailure

logger = logging.getLogger(__name__)

OFFSET_BITS = 40
OFFSET_MASK = np.uint64((1 << OFFSET_BITS) - 1)
MAX_OFFSET = 1 << OFFSET_BITS

INDEX_FORMAT = 1

# Set bits per byte value
POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint8)


@dataclass(frozen=True)
class Neighbor:
    """A stored descriptor returned by a query."""

    offset: int
    distance: int


def hamming_distances(query: np.ndarray, rows: np.ndarray) -> np.ndarray:
    """Hamming distance between one packed descriptor and each row."""
    if len(rows) == 0:
        return np.zeros(0, dtype=np.int64)
    return POPCOUNT[np.bitwise_xor(rows, query)].sum(axis=1, dtype=np.int64)


def probe_masks(key_size: int, probe_level: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    XOR masks of every bucket within `probe_level` flipped bits.

    Returns:
        (masks, flips): uint64 masks ordered by number of flipped bits,
        starting with 0 (the query's own bucket), and the flip count of
        each mask.
    """
    masks = []
    flips = []
    for level in range(min(probe_level, key_size) + 1):
        for bits in combinations(range(key_size), level):
            masks.append(sum(1 << b for b in bits))
            flips.append(level)
    return np.array(masks, dtype=np.uint64), np.array(flips, dtype=np.int64)


class LshIndex:
    """
    Immutable multi-probe LSH index over one store snapshot.

    Attributes:
        bit_positions: (table_count, key_size) bit indices sampled per table.
        tables: One sorted uint64 array of packed (bucket, offset) per table.
        descriptor_size: Bytes per descriptor.
        descriptor_count: Number of descriptors in the indexed snapshot.
        image_count: Number of images in the indexed snapshot.
    """

    def __init__(self,
                 bit_positions: np.ndarray,
                 tables: Sequence[np.ndarray],
                 descriptor_size: int,
                 descriptor_count: int,
                 image_count: int,
                 seed: int = 0):
        self.bit_positions = np.asarray(bit_positions, dtype=np.int64)
        self.tables = list(tables)
        self.descriptor_size = descriptor_size
        self.descriptor_count = descriptor_count
        self.image_count = image_count
        self.seed = seed

        self._weights = (np.uint64(1) << np.arange(self.key_size, dtype=np.uint64))
        self._probe_cache = {}

    @property
    def table_count(self) -> int:
        return self.bit_positions.shape[0]

    @property
    def key_size(self) -> int:
        return self.bit_positions.shape[1]

    def __len__(self) -> int:
        return self.descriptor_count

    @classmethod
    def build(cls, snapshot, table_count: int = 6, key_size: int = 12,
              batch_size: int = 1_000_000, seed: int = 0) -> "LshIndex":
        """
        Hash every descriptor of a store snapshot into fresh tables.

        Args:
            snapshot: StoreSnapshot to index.
            table_count: Number of independent hash tables.
            key_size: Sampled bits per table (bucket key length).
            batch_size: Descriptors hashed per step; bounds temporary memory.
            seed: Seed for the sampled bit positions.

        Returns:
            A new index. Nothing is published on failure.

        Raises:
            IndexBuildFailure: If the snapshot cannot be read or the
                tables do not fit in memory.
        """
        n_bits = snapshot.descriptor_size * 8
        if table_count <= 0:
            raise IndexBuildFailure("table_count must be positive")
        if not 1 <= key_size <= min(n_bits, 64 - OFFSET_BITS):
            raise IndexBuildFailure(f"key_size {key_size} out of range")
        if snapshot.descriptor_count >= MAX_OFFSET:
            raise IndexBuildFailure(
                f"{snapshot.descriptor_count} descriptors exceed the "
                f"{OFFSET_BITS}-bit offset space"
            )

        rng = np.random.RandomState(seed)
        bit_positions = np.stack([
            rng.choice(n_bits, size=key_size, replace=False)
            for _ in range(table_count)
        ])
        index = cls(bit_positions, [], snapshot.descriptor_size,
                    snapshot.descriptor_count, snapshot.image_count, seed)

        logger.info(
            f"Building LSH index: {table_count} tables x {key_size} bits "
            f"over {snapshot.descriptor_count} descriptors"
        )
        try:
            chunks: List[List[np.ndarray]] = [[] for _ in range(table_count)]
            for batch in snapshot.iter_batches(batch_size):
                keys = index.hash_keys(batch.descriptors)
                offsets = np.arange(batch.start, batch.stop, dtype=np.uint64)
                for t in range(table_count):
                    chunks[t].append((keys[:, t] << np.uint64(OFFSET_BITS)) | offsets)

            tables = []
            for t in range(table_count):
                if chunks[t]:
                    table = np.concatenate(chunks[t])
                    table.sort()
                else:
                    table = np.zeros(0, dtype=np.uint64)
                chunks[t] = []
                tables.append(table)
        except MemoryError as e:
            raise IndexBuildFailure("Out of memory while building LSH tables") from e
        except OSError as e:
            raise IndexBuildFailure(f"Could not read descriptor log: {e}") from e

        index.tables = tables
        logger.info(f"LSH index built: {index.descriptor_count} descriptors, "
                    f"{index.image_count} images")
        return index

    def hash_keys(self, descriptors: np.ndarray) -> np.ndarray:
        """Bucket key of each descriptor in each table, shape (n, tables)."""
        descriptors = np.atleast_2d(np.asarray(descriptors, dtype=np.uint8))
        if descriptors.shape[1] != self.descriptor_size:
            raise ValueError(
                f"Expected {self.descriptor_size}-byte descriptors, "
                f"got {descriptors.shape[1]}"
            )
        bits = np.unpackbits(descriptors, axis=1, bitorder="little")
        sampled = bits[:, self.bit_positions.ravel()].reshape(
            len(descriptors), self.table_count, self.key_size
        ).astype(np.uint64)
        return (sampled * self._weights).sum(axis=2, dtype=np.uint64)

    def _probes(self, probe_level: int) -> Tuple[np.ndarray, np.ndarray]:
        if probe_level not in self._probe_cache:
            self._probe_cache[probe_level] = probe_masks(self.key_size, probe_level)
        return self._probe_cache[probe_level]

    def query(self, descriptor: np.ndarray, k: int, data: np.ndarray,
              start: int = 0, probe_level: int = 1, checks: int = 32,
              eps: float = 0.0) -> List[Neighbor]:
        """Approximate k nearest neighbours of one descriptor. See query_many."""
        return self.query_many(np.atleast_2d(descriptor), k, data, start,
                               probe_level, checks, eps)[0]

    def query_many(self, descriptors: np.ndarray, k: int, data: np.ndarray,
                   start: int = 0, probe_level: int = 1, checks: int = 32,
                   eps: float = 0.0) -> List[List[Neighbor]]:
        """
        Approximate k nearest neighbours by Hamming distance.

        Only stored descriptors with offsets in [start, start + len(data))
        are considered; `data` must hold exactly those rows, so a single
        store batch (or the whole snapshot with start=0) can be searched.

        Buckets are scanned by increasing number of flipped key bits, all
        tables at one level before the next. A candidate seen in several
        tables is examined once.

        Args:
            descriptors: (q, descriptor_size) query descriptors.
            k: Neighbours to return per query.
            data: Rows of the searched offset range.
            start: Offset of data[0].
            probe_level: Maximum flipped key bits to probe (0 = plain LSH).
            checks: Stop after examining this many candidates (<= 0 means
                no limit). Candidates from the query's own buckets are
                always examined; the cap limits the multi-probe levels.
            eps: Stop early once the k-th best distance is below
                (1 + eps) times the smallest distance still possible.

        Returns:
            For each query, up to k neighbours sorted by (distance, offset).
        """
        descriptors = np.atleast_2d(np.asarray(descriptors, dtype=np.uint8))
        if k <= 0 or len(descriptors) == 0:
            return [[] for _ in range(len(descriptors))]

        stop = start + len(data)
        if start < 0 or stop > self.descriptor_count:
            raise IndexError(
                f"Range [{start}, {stop}) outside indexed snapshot "
                f"of {self.descriptor_count} descriptors"
            )

        masks, flips = self._probes(probe_level)
        keys = self.hash_keys(descriptors)
        shift = np.uint64(OFFSET_BITS)
        probes = (keys[:, :, None] ^ masks[None, None, :]) << shift

        lo = np.empty(probes.shape, dtype=np.int64)
        hi = np.empty(probes.shape, dtype=np.int64)
        for t, table in enumerate(self.tables):
            lo[:, t, :] = np.searchsorted(table, probes[:, t, :] | np.uint64(start))
            hi[:, t, :] = np.searchsorted(table, probes[:, t, :] | np.uint64(stop))

        levels = np.unique(flips)
        level_probes = [np.nonzero(flips == level)[0] for level in levels]

        return [
            self._scan(descriptors[q], lo[q], hi[q], levels, level_probes,
                       k, data, start, checks, eps)
            for q in range(len(descriptors))
        ]

    def _scan(self, descriptor, lo, hi, levels, level_probes, k, data,
              start, checks, eps) -> List[Neighbor]:
        best_offsets = np.zeros(0, dtype=np.int64)
        best_distances = np.zeros(0, dtype=np.int64)
        seen = np.zeros(0, dtype=np.int64)
        examined = 0

        for level, probe_ids in zip(levels, level_probes):
            if len(best_distances) >= k and best_distances[-1] < (1.0 + eps) * level:
                break

            parts = []
            for t, table in enumerate(self.tables):
                for p in probe_ids:
                    if hi[t, p] > lo[t, p]:
                        parts.append(table[lo[t, p]:hi[t, p]])
            if not parts:
                continue

            candidates = (np.concatenate(parts) & OFFSET_MASK).astype(np.int64)
            if level > 0 and len(parts) > 1:
                # Round-robin over the probed buckets
                ranks = np.concatenate([np.arange(len(part)) for part in parts])
                candidates = candidates[np.argsort(ranks, kind="stable")]
            _, first = np.unique(candidates, return_index=True)
            candidates = candidates[np.sort(first)]
            if len(seen):
                candidates = candidates[~np.isin(candidates, seen)]

            # The own bucket is always scanned in full
            if checks > 0 and level > 0:
                candidates = candidates[:max(checks - examined, 0)]
            if len(candidates) == 0:
                continue

            examined += len(candidates)
            seen = np.concatenate([seen, candidates])
            distances = hamming_distances(descriptor, data[candidates - start])

            offsets = np.concatenate([best_offsets, candidates])
            distances = np.concatenate([best_distances, distances])
            order = np.lexsort((offsets, distances))[:k]
            best_offsets = offsets[order]
            best_distances = distances[order]

            if checks > 0 and examined >= checks:
                break

        return [Neighbor(int(o), int(d)) for o, d in zip(best_offsets, best_distances)]

    def stats(self) -> dict:
        """Bucket occupancy summary, for logging and diagnostics."""
        occupied = []
        largest = []
        for table in self.tables:
            buckets = np.unique(table >> np.uint64(OFFSET_BITS), return_counts=True)[1]
            occupied.append(len(buckets))
            largest.append(int(buckets.max()) if len(buckets) else 0)
        return {
            "tables": self.table_count,
            "key_size": self.key_size,
            "descriptors": self.descriptor_count,
            "images": self.image_count,
            "occupied_buckets": occupied,
            "largest_bucket": largest,
        }

    # Persistence

    def save(self, path: str) -> None:
        """Write the index, replacing any previous file atomically."""
        meta = {
            "format": INDEX_FORMAT,
            "descriptor_size": self.descriptor_size,
            "descriptor_count": self.descriptor_count,
            "image_count": self.image_count,
            "seed": self.seed,
        }
        arrays = {f"table_{t}": table for t, table in enumerate(self.tables)}

        tmp_path = path + ".tmp"
        with open(tmp_path, "wb") as f:
            np.savez(f, meta=np.array(json.dumps(meta)),
                     bit_positions=self.bit_positions, **arrays)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        logger.info(f"Saved LSH index to {path}")

    @classmethod
    def load(cls, path: str) -> "LshIndex":
        """
        Read an index written by save().

        Raises:
            DatabaseCorrupt: If the file is unreadable or inconsistent.
        """
        try:
            with np.load(path, allow_pickle=False) as data:
                meta = json.loads(str(data["meta"]))
                bit_positions = data["bit_positions"]
                tables = [data[f"table_{t}"] for t in range(bit_positions.shape[0])]
        except (OSError, KeyError, ValueError, zipfile.BadZipFile) as e:
            raise DatabaseCorrupt(f"Unreadable LSH index {path}: {e}") from e

        if meta.get("format") != INDEX_FORMAT:
            raise DatabaseCorrupt(f"Unsupported index format {meta.get('format')!r}")

        count = meta["descriptor_count"]
        for t, table in enumerate(tables):
            if table.dtype != np.uint64 or len(table) != count:
                raise DatabaseCorrupt(
                    f"Index table {t} holds {len(table)} entries, expected {count}"
                )
            if count and int((table & OFFSET_MASK).max()) >= count:
                raise DatabaseCorrupt(f"Index table {t} refers past the indexed snapshot")

        return cls(bit_positions, tables, meta["descriptor_size"], count,
                   meta["image_count"], meta.get("seed", 0))


def estimate_recall(index: LshIndex, snapshot, sample_size: int = 100,
                    k: int = 3, probe_level: int = 1, checks: int = 32,
                    eps: float = 0.0, seed: int = 0) -> float:
    """
    Fraction of true k nearest neighbours the LSH index finds, measured on
    stored descriptors against exact search with faiss.IndexBinaryFlat.

    A returned neighbour counts as a hit when its distance is no larger
    than the exact k-th distance, so ties between equidistant descriptors
    do not count as misses.
    """
    count = min(index.descriptor_count, snapshot.descriptor_count)
    if count == 0 or sample_size <= 0:
        return 0.0

    rng = np.random.RandomState(seed)
    sample = np.sort(rng.choice(count, size=min(sample_size, count), replace=False))
    data = snapshot.descriptors()[:count]
    queries = np.ascontiguousarray(data[sample])

    exact = faiss.IndexBinaryFlat(snapshot.descriptor_size * 8)
    for batch in snapshot.iter_batches(1_000_000, stop=count):
        exact.add(np.ascontiguousarray(batch.descriptors))
    exact_distances, exact_labels = exact.search(queries, k)

    approximate = index.query_many(queries, k, data, 0, probe_level, checks, eps)

    hits = 0
    wanted = 0
    for row, labels, neighbors in zip(exact_distances, exact_labels, approximate):
        valid = row[labels >= 0]
        if len(valid) == 0:
            continue
        kth = valid[-1]
        wanted += len(valid)
        hits += min(len(valid), sum(1 for n in neighbors if n.distance <= kth))

    recall = hits / wanted if wanted else 0.0
    logger.info(f"Estimated LSH recall@{k}: {recall:.3f} over {len(sample)} samples")
    return recall
