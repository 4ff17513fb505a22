"""
Bulk ingestion of image files into the descriptor store.

Walks a file or directory tree, extracts ORB descriptors from every file
whose extension is in the accepted suffix list and appends them to the
store. A file that cannot be decoded or is already stored is reported
and skipped; it never aborts the run. The LSH index is not touched here;
rebuilding it is a separate, explicit step.
"""

import os
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Tuple

from .errors import DuplicateImage, InvalidImage, NotFound
from .orb_extractor import OrbExtractor
from .store import DescriptorStore

logger = logging.getLogger(__name__)

DEFAULT_SUFFIXES = ("jpg", "png")

# Log progress every N files
PROGRESS_EVERY = 500


@dataclass
class IngestSummary:
    """Per-run outcome of add_images."""

    added: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    descriptors: int = 0

    @property
    def processed(self) -> int:
        return len(self.added) + len(self.duplicates) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "added": len(self.added),
            "duplicates": len(self.duplicates),
            "failed": [{"path": p, "error": e} for p, e in self.failed],
            "descriptors": self.descriptors,
        }


def parse_suffixes(suffixes) -> Tuple[str, ...]:
    """Accept "jpg,png", ["jpg", ".PNG"], ... and normalize to ("jpg", "png")."""
    if isinstance(suffixes, str):
        suffixes = suffixes.split(",")
    return tuple(s.strip().lstrip(".").lower() for s in suffixes if s.strip())


def find_images(path: str, suffixes: Sequence[str] = DEFAULT_SUFFIXES) -> List[str]:
    """
    List image files under path, sorted for a reproducible ingest order.

    A path naming a single file is returned as-is regardless of its
    extension.

    Raises:
        NotFound: If path does not exist.
    """
    if os.path.isfile(path):
        return [os.path.abspath(path)]
    if not os.path.isdir(path):
        raise NotFound(f"No such file or directory: {path}")

    accepted = set(parse_suffixes(suffixes))
    found = []
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files):
            ext = os.path.splitext(name)[1].lstrip(".").lower()
            if ext in accepted:
                found.append(os.path.abspath(os.path.join(root, name)))
    return found


def content_hash(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


def add_images(store: DescriptorStore,
               extractor: OrbExtractor,
               path: str,
               suffixes: Iterable[str] = DEFAULT_SUFFIXES) -> IngestSummary:
    """
    Extract and store descriptors for every matching image under path.

    Image ids are absolute file paths; the record's source is the file's
    content hash.

    Args:
        store: Writable descriptor store.
        extractor: Extractor configured like the one used for queries.
        path: Image file or directory (searched recursively).
        suffixes: Accepted file extensions, case-insensitive.

    Returns:
        IngestSummary listing added, duplicate and failed files.
    """
    files = find_images(path, tuple(suffixes))
    summary = IngestSummary()

    logger.info(f"Adding {len(files)} images from {path}")

    for i, filepath in enumerate(files):
        if filepath in store:
            logger.debug(f"Already stored: {filepath}")
            summary.duplicates.append(filepath)
            continue

        try:
            features = extractor.extract_file(filepath)
            record = store.append(filepath, features.descriptors,
                                  source=content_hash(filepath))
        except DuplicateImage:
            summary.duplicates.append(filepath)
            continue
        except (InvalidImage, OSError) as e:
            logger.warning(f"Failed to process {filepath}: {e}")
            summary.failed.append((filepath, str(e)))
            continue

        summary.added.append(filepath)
        summary.descriptors += record.count

        if (i + 1) % PROGRESS_EVERY == 0:
            logger.info(f"Processed {i + 1}/{len(files)} images")

    logger.info(
        f"Ingest complete: {len(summary.added)} added, "
        f"{len(summary.duplicates)} already stored, "
        f"{len(summary.failed)} failed, {summary.descriptors} descriptors"
    )
    return summary
