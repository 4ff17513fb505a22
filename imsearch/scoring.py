"""
Vote aggregation and ranking of search results.

Each query descriptor casts at most one vote per image among its k
nearest stored neighbours, so an image can never score more than the
number of query descriptors, and an image searched against itself
scores exactly that number.

An optional distance-weighted mode replaces the unit vote with
`1 - distance / descriptor_bits` for finer ordering between images that
collect the same number of votes.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Union

logger = logging.getLogger(__name__)

SCORE_MODES = ("votes", "weighted")


@dataclass(frozen=True)
class SearchResult:
    """Score is an int vote count, or a float in weighted mode."""

    image_id: str
    score: Union[int, float]

    def to_dict(self) -> dict:
        return {"image": self.image_id, "score": self.score}


class VoteCounter:
    """Accumulates per-image scores from neighbour lists."""

    def __init__(self, mode: str = "votes", descriptor_bits: int = 256):
        if mode not in SCORE_MODES:
            raise ValueError(f"Unknown score mode {mode!r}")
        self.mode = mode
        self.descriptor_bits = descriptor_bits
        self.scores: Dict[str, Union[int, float]] = defaultdict(int)

    def add(self, image_ids: Sequence[str], distances: Sequence[int]) -> None:
        """
        Count one query descriptor's neighbours.

        Args:
            image_ids: Owning image of each neighbour.
            distances: Hamming distance of each neighbour, same order.
        """
        best: Dict[str, int] = {}
        for image_id, distance in zip(image_ids, distances):
            if image_id not in best or distance < best[image_id]:
                best[image_id] = distance

        for image_id, distance in best.items():
            if self.mode == "votes":
                self.scores[image_id] += 1
            else:
                self.scores[image_id] += max(0.0, 1.0 - distance / self.descriptor_bits)

    def results(self) -> List[SearchResult]:
        logger.debug(f"{len(self.scores)} images received votes")
        return rank_results(
            SearchResult(image_id, score) for image_id, score in self.scores.items()
        )


def rank_results(results: Iterable[SearchResult]) -> List[SearchResult]:
    """
    Sort by score (descending), breaking ties by image id (ascending) so
    the order is deterministic.
    """
    return sorted(results, key=lambda r: (-r.score, r.image_id))
