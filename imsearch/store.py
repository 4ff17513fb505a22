"""
Append-only descriptor database.

A store is a directory holding three files:
    meta.json        format version and descriptor width, fixed at creation
    descriptors.bin  every descriptor row ever appended, back to back
    records.jsonl    one ImageRecord per line: id, source, offset range

An append writes and fsyncs the descriptor bytes first and only then
appends the record line, so a reader that sees a record can always read
its descriptors. Bytes past the last record (left by an interrupted
append) are invisible to readers and truncated the next time a writer
opens the store.
"""

import os
import json
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DatabaseCorrupt, DuplicateImage, NotFound, ReadOnlyStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
META_FILE = "meta.json"
LOG_FILE = "descriptors.bin"
RECORDS_FILE = "records.jsonl"


@dataclass(frozen=True)
class ImageRecord:
    """One ingested image and its half-open range in the descriptor log."""

    image_id: str
    source: str
    start: int
    stop: int

    @property
    def count(self) -> int:
        return self.stop - self.start

    def to_json(self) -> str:
        return json.dumps({"id": self.image_id, "source": self.source,
                           "start": self.start, "stop": self.stop},
                          ensure_ascii=False)


@dataclass(frozen=True)
class Batch:
    """
    A contiguous run of descriptors [start, stop) from a snapshot.

    `owners` holds, for every row, the position of its ImageRecord in
    `records`.
    """

    start: int
    stop: int
    descriptors: np.ndarray
    owners: np.ndarray
    records: Tuple[ImageRecord, ...]

    def __len__(self) -> int:
        return self.stop - self.start

    @property
    def image_ids(self) -> List[str]:
        return [self.records[i].image_id for i in self.owners]


class StoreSnapshot:
    """
    Immutable view of the records published at one point in time.

    Descriptors appended after the snapshot was taken are never visible
    through it, so an index built from a snapshot only ever refers to
    images the snapshot knows about.
    """

    def __init__(self, log_path: str, descriptor_size: int,
                 records: Tuple[ImageRecord, ...]):
        self.log_path = log_path
        self.descriptor_size = descriptor_size
        self.records = records
        self.starts = np.array([r.start for r in records], dtype=np.int64)
        self.descriptor_count = records[-1].stop if records else 0
        self.image_count = len(records)

    def __len__(self) -> int:
        return self.descriptor_count

    def owner_positions(self, offsets: np.ndarray) -> np.ndarray:
        """Record position owning each global descriptor offset."""
        offsets = np.asarray(offsets, dtype=np.int64)
        if np.any(offsets < 0) or np.any(offsets >= self.descriptor_count):
            raise IndexError("Descriptor offset outside snapshot")
        # Empty records share their start with the next record; 'right'
        # skips past them to the record that actually owns the row.
        return np.searchsorted(self.starts, offsets, side="right") - 1

    def image_ids_for(self, offsets: Sequence[int]) -> List[str]:
        return [self.records[i].image_id for i in self.owner_positions(offsets)]

    def _memmap(self, stop: int) -> np.ndarray:
        if stop == 0:
            return np.zeros((0, self.descriptor_size), dtype=np.uint8)
        return np.memmap(self.log_path, dtype=np.uint8, mode="r",
                         shape=(stop, self.descriptor_size))

    def read(self, start: int, stop: int) -> np.ndarray:
        """Copy descriptors [start, stop) into memory."""
        if not 0 <= start <= stop <= self.descriptor_count:
            raise IndexError(f"Range [{start}, {stop}) outside snapshot")
        return np.array(self._memmap(stop)[start:stop])

    def descriptors(self) -> np.ndarray:
        """Read-only memory map of every descriptor in the snapshot."""
        return self._memmap(self.descriptor_count)

    def iter_batches(self, batch_size: int, stop: Optional[int] = None
                     ) -> Iterator[Batch]:
        """
        Stream descriptors in batches of at most `batch_size` rows.

        Every descriptor in [0, stop) is yielded exactly once per call;
        calling again restarts from offset 0. Only one batch is held in
        memory at a time.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        stop = self.descriptor_count if stop is None else min(stop, self.descriptor_count)
        if stop == 0:
            return

        data = self._memmap(stop)
        for start in range(0, stop, batch_size):
            end = min(start + batch_size, stop)
            offsets = np.arange(start, end, dtype=np.int64)
            yield Batch(
                start=start,
                stop=end,
                descriptors=np.array(data[start:end]),
                owners=self.owner_positions(offsets),
                records=self.records,
            )


class DescriptorStore:
    """
    Persistent image → descriptor matrix mapping with reverse lookup from
    descriptor offset to image.

    One writer at a time (appends are serialized by a lock); any number of
    readers may take snapshots while an append is in progress.
    """

    def __init__(self, path: str, descriptor_size: int,
                 records: List[ImageRecord], writable: bool):
        self.path = path
        self.descriptor_size = descriptor_size
        self.writable = writable
        self.log_path = os.path.join(path, LOG_FILE)
        self.records_path = os.path.join(path, RECORDS_FILE)

        self._records: Tuple[ImageRecord, ...] = tuple(records)
        self._by_id: Dict[str, ImageRecord] = {r.image_id: r for r in records}
        self._snapshot: Optional[StoreSnapshot] = None
        self._write_lock = threading.Lock()

    @classmethod
    def open(cls, path: str, descriptor_size: Optional[int] = None,
             create: bool = True, writable: bool = True) -> "DescriptorStore":
        """
        Open a store directory, creating it if needed.

        Args:
            path: Store directory.
            descriptor_size: Expected bytes per descriptor. Required when
                creating; checked against the header otherwise.
            create: Create the store if it does not exist.
            writable: Open for appends. A writable open repairs a torn
                log tail left by an interrupted append.

        Raises:
            NotFound: If the store does not exist and create is False.
            DatabaseCorrupt: If the header, records and log disagree.
        """
        meta_path = os.path.join(path, META_FILE)

        if os.path.exists(path) and not os.path.isdir(path):
            raise DatabaseCorrupt(f"{path} exists and is not a store directory")

        if not os.path.exists(meta_path):
            if os.path.isdir(path) and os.listdir(path):
                raise DatabaseCorrupt(f"{path} is missing {META_FILE}")
            if not create:
                raise NotFound(f"No descriptor store at {path}")
            cls._create(path, descriptor_size or 32)

        meta = _read_meta(meta_path)
        stored_size = meta["descriptor_size"]
        if descriptor_size is not None and descriptor_size != stored_size:
            raise DatabaseCorrupt(
                f"Store holds {stored_size}-byte descriptors, "
                f"expected {descriptor_size}"
            )

        records = _read_records(os.path.join(path, RECORDS_FILE))
        store = cls(path, stored_size, records, writable)
        store._check_log(repair=writable)

        logger.info(
            f"Opened descriptor store {path}: {store.image_count} images, "
            f"{store.descriptor_count} descriptors"
        )
        return store

    @staticmethod
    def _create(path: str, descriptor_size: int) -> None:
        if descriptor_size <= 0:
            raise ValueError("descriptor_size must be positive")
        os.makedirs(path, exist_ok=True)
        for name in (LOG_FILE, RECORDS_FILE):
            open(os.path.join(path, name), "ab").close()

        meta_path = os.path.join(path, META_FILE)
        tmp_path = meta_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"format": FORMAT_VERSION,
                       "descriptor_size": descriptor_size}, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, meta_path)
        logger.info(f"Created descriptor store at {path} "
                    f"({descriptor_size * 8}-bit descriptors)")

    def _check_log(self, repair: bool) -> None:
        expected = self.descriptor_count * self.descriptor_size
        actual = os.path.getsize(self.log_path) if os.path.exists(self.log_path) else 0

        if actual < expected:
            raise DatabaseCorrupt(
                f"Descriptor log holds {actual} bytes but records "
                f"reference {expected}"
            )
        if actual > expected and repair:
            logger.warning(
                f"Truncating {actual - expected} unpublished bytes "
                f"from {self.log_path}"
            )
            with open(self.log_path, "r+b") as f:
                f.truncate(expected)
                os.fsync(f.fileno())

        if repair:
            _truncate_torn_line(self.records_path)

    # Read side

    @property
    def image_count(self) -> int:
        return len(self._records)

    @property
    def descriptor_count(self) -> int:
        records = self._records
        return records[-1].stop if records else 0

    def __contains__(self, image_id: str) -> bool:
        return image_id in self._by_id

    def __len__(self) -> int:
        return self.image_count

    def records(self) -> Tuple[ImageRecord, ...]:
        return self._records

    def record(self, image_id: str) -> ImageRecord:
        try:
            return self._by_id[image_id]
        except KeyError:
            raise NotFound(f"Image not in store: {image_id}") from None

    def get(self, image_id: str) -> np.ndarray:
        """
        Descriptor matrix of one image, in the order it was appended.

        Raises:
            NotFound: If the image was never appended.
        """
        record = self.record(image_id)
        if record.count == 0:
            return np.zeros((0, self.descriptor_size), dtype=np.uint8)

        with open(self.log_path, "rb") as f:
            f.seek(record.start * self.descriptor_size)
            data = f.read(record.count * self.descriptor_size)
        if len(data) != record.count * self.descriptor_size:
            raise DatabaseCorrupt(f"Descriptor log truncated under {image_id}")
        return np.frombuffer(data, dtype=np.uint8).reshape(record.count, self.descriptor_size).copy()

    def snapshot(self) -> StoreSnapshot:
        snap = self._snapshot
        records = self._records
        if snap is None or snap.records is not records:
            snap = StoreSnapshot(self.log_path, self.descriptor_size, records)
            self._snapshot = snap
        return snap

    def iter_batches(self, batch_size: int) -> Iterator[Batch]:
        """Batches over the records published when iteration starts."""
        return self.snapshot().iter_batches(batch_size)

    def owners_of(self, offsets: Sequence[int]) -> List[str]:
        return self.snapshot().image_ids_for(offsets)

    def refresh(self) -> None:
        """Pick up records published by another process."""
        records = _read_records(self.records_path)
        if records[:len(self._records)] != list(self._records):
            raise DatabaseCorrupt("Published records changed underneath the store")
        self._records = tuple(records)
        self._by_id = {r.image_id: r for r in records}
        self._check_log(repair=False)

    # Write side

    def append(self, image_id: str, descriptors: np.ndarray,
               source: Optional[str] = None) -> ImageRecord:
        """
        Durably append one image's descriptors, then publish its record.

        Args:
            image_id: Unique identifier (the ingestion layer uses the
                absolute file path).
            descriptors: uint8 matrix (n, descriptor_size); n may be 0.
            source: Where the image came from; defaults to image_id.

        Returns:
            The published ImageRecord.

        Raises:
            DuplicateImage: If image_id is already stored. The store is
                left unchanged.
            ValueError: If the matrix has the wrong shape or dtype.
            ReadOnlyStore: If the store was opened with writable=False.
        """
        if not self.writable:
            raise ReadOnlyStore(f"Store {self.path} opened read-only")

        descriptors = np.asarray(descriptors)
        if descriptors.ndim != 2 or descriptors.shape[1] != self.descriptor_size:
            raise ValueError(
                f"Expected descriptors of shape (n, {self.descriptor_size}), "
                f"got {descriptors.shape}"
            )
        if descriptors.dtype != np.uint8:
            raise ValueError(f"Expected uint8 descriptors, got {descriptors.dtype}")

        with self._write_lock:
            if image_id in self._by_id:
                raise DuplicateImage(f"Image already in store: {image_id}")

            start = self.descriptor_count
            record = ImageRecord(image_id=image_id, source=source or image_id,
                                 start=start, stop=start + len(descriptors))

            records_size = os.path.getsize(self.records_path)
            try:
                with open(self.log_path, "ab") as f:
                    f.write(np.ascontiguousarray(descriptors).tobytes())
                    f.flush()
                    os.fsync(f.fileno())

                # The record line is the publish point
                with open(self.records_path, "a", encoding="utf-8") as f:
                    f.write(record.to_json() + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except BaseException:
                logger.error(f"Append of {image_id} failed, rolling back")
                self._rollback(start * self.descriptor_size, records_size)
                raise

            self._by_id[image_id] = record
            self._records = self._records + (record,)

        logger.debug(f"Appended {record.count} descriptors for {image_id}")
        return record

    def _rollback(self, log_size: int, records_size: int) -> None:
        """Cut both files back to their sizes before a failed append."""
        for path, size in ((self.log_path, log_size), (self.records_path, records_size)):
            with open(path, "r+b") as f:
                f.truncate(size)
                os.fsync(f.fileno())


def _read_meta(meta_path: str) -> dict:
    try:
        with open(meta_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
    except (OSError, ValueError) as e:
        raise DatabaseCorrupt(f"Unreadable store header {meta_path}: {e}") from e

    if meta.get("format") != FORMAT_VERSION:
        raise DatabaseCorrupt(f"Unsupported store format {meta.get('format')!r}")
    size = meta.get("descriptor_size")
    if not isinstance(size, int) or size <= 0:
        raise DatabaseCorrupt(f"Invalid descriptor size {size!r} in {meta_path}")
    return meta


def _read_records(records_path: str) -> List[ImageRecord]:
    """
    Parse and validate the record log.

    A final line without a newline is an append that never completed and
    is ignored.
    """
    if not os.path.exists(records_path):
        return []

    with open(records_path, "r", encoding="utf-8") as f:
        content = f.read()

    lines = content.split("\n")
    # Either "" after the last newline, or a torn line
    complete = lines[:-1]

    records = []
    seen = set()
    expected_start = 0
    for lineno, line in enumerate(complete, start=1):
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
            record = ImageRecord(image_id=str(raw["id"]), source=str(raw["source"]),
                                 start=int(raw["start"]), stop=int(raw["stop"]))
        except (ValueError, KeyError, TypeError) as e:
            raise DatabaseCorrupt(f"{records_path}:{lineno}: bad record ({e})") from e

        if record.start != expected_start or record.stop < record.start:
            raise DatabaseCorrupt(
                f"{records_path}:{lineno}: range [{record.start}, {record.stop}) "
                f"does not continue from offset {expected_start}"
            )
        if record.image_id in seen:
            raise DatabaseCorrupt(f"{records_path}:{lineno}: duplicate id {record.image_id}")

        seen.add(record.image_id)
        records.append(record)
        expected_start = record.stop

    return records


def _truncate_torn_line(records_path: str) -> None:
    if not os.path.exists(records_path):
        return
    with open(records_path, "r+b") as f:
        content = f.read()
        if not content or content.endswith(b"\n"):
            return
        keep = content.rfind(b"\n") + 1
        logger.warning(f"Dropping incomplete record at end of {records_path}")
        f.truncate(keep)
        os.fsync(f.fileno())
