"""Duplicate detection against the images already stored in the dataset.

``DuplicateIndex`` keeps the content hashes of every stored image in memory.
It is rebuilt from storage at the start of each run and grows as images are
accepted; storage stays the only durable source of truth.

``DuplicateScanner`` is the offline counterpart: it walks both partitions and
reports which files share the same content.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ovrcurator.errors import StorageError
from ovrcurator.hashing import content_hash
from ovrcurator.models import DuplicateKind
from ovrcurator.storage import Partition

if TYPE_CHECKING:
    from pathlib import Path

    from ovrcurator.storage import DatasetStorage

logger = logging.getLogger(__name__)

_SCAN_ORDER = (Partition.CONFIRMED, Partition.PENDING)


class DuplicateIndex:
    """In-memory set of content hashes plus name checks delegated to storage.

    Not thread-safe: only the single driving pipeline coroutine mutates it.
    """

    def __init__(self, storage: DatasetStorage) -> None:
        self._storage = storage
        self._hashes: set[str] = set()

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, digest: object) -> bool:
        return digest in self._hashes

    def initialize(self) -> None:
        """Rebuild the hash set from both storage partitions.

        Unreadable files and label directories are logged and skipped. A
        missing partition counts as empty; a partition root that exists but
        cannot be listed raises ``StorageError``.
        """
        self._hashes.clear()
        hashes: set[str] = set()
        for partition in _SCAN_ORDER:
            files = self._storage.list_image_files(partition)
            loaded = 0
            for path in files:
                try:
                    data = self._storage.read_bytes(path)
                except StorageError as exc:
                    logger.warning("Skipping unreadable file %s: %s", path, exc)
                    continue
                hashes.add(content_hash(data))
                loaded += 1
            logger.info("Indexed %d/%d files from %s partition", loaded, len(files), partition)
        self._hashes = hashes
        logger.info("Duplicate index ready with %d unique hashes", len(self._hashes))

    def check(self, data: bytes, file_name: str, label: str) -> DuplicateKind | None:
        """Return why the image is a duplicate, or None if it is new.

        The file-name probe runs first; the content hash is only computed when
        no file with that name exists under ``label`` in either partition.
        """
        for partition in _SCAN_ORDER:
            if self._storage.exists(file_name, label, partition):
                logger.info("Duplicate file name %s/%s in %s partition", label, file_name, partition)
                return DuplicateKind.NAME

        if content_hash(data) in self._hashes:
            logger.info("Duplicate content for %s", file_name)
            return DuplicateKind.CONTENT
        return None

    def is_duplicate(self, data: bytes, file_name: str, label: str) -> bool:
        return self.check(data, file_name, label) is not None

    def record_accepted(self, data: bytes) -> None:
        """Mark an image as known. Call only after it has been persisted."""
        self._hashes.add(content_hash(data))


# ---------------------------------------------------------------------------
# Offline scan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DuplicateGroup:
    """Files sharing one content hash."""

    digest: str
    confirmed: tuple[Path, ...]
    pending: tuple[Path, ...]

    @property
    def redundant(self) -> tuple[Path, ...]:
        """Pending copies to remove: all of them if a confirmed copy exists, else all but the first."""
        if self.confirmed:
            return self.pending
        return self.pending[1:]


@dataclass
class DuplicateScanReport:
    scanned_files: int = 0
    unreadable_files: int = 0
    groups: list[DuplicateGroup] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)

    @property
    def redundant_files(self) -> int:
        return sum(len(group.redundant) for group in self.groups)


class DuplicateScanner:
    """Finds stored images with identical content across both partitions."""

    def __init__(self, storage: DatasetStorage) -> None:
        self._storage = storage

    def scan(self, *, delete: bool = False) -> DuplicateScanReport:
        """Group stored files by content hash.

        Only groups with at least one redundant pending copy are reported.
        Confirmed files are never deleted.
        """
        report = DuplicateScanReport()
        by_hash: dict[str, dict[Partition, list[Path]]] = defaultdict(lambda: defaultdict(list))

        for partition in _SCAN_ORDER:
            for path in self._storage.list_image_files(partition):
                report.scanned_files += 1
                try:
                    data = self._storage.read_bytes(path)
                except StorageError as exc:
                    logger.warning("Skipping unreadable file %s: %s", path, exc)
                    report.unreadable_files += 1
                    continue
                by_hash[content_hash(data)][partition].append(path)

        for digest, paths in by_hash.items():
            group = DuplicateGroup(
                digest=digest,
                confirmed=tuple(paths[Partition.CONFIRMED]),
                pending=tuple(paths[Partition.PENDING]),
            )
            if group.redundant:
                report.groups.append(group)

        if delete:
            for group in report.groups:
                for path in group.redundant:
                    try:
                        self._storage.delete(path)
                    except StorageError as exc:
                        logger.warning("Could not delete %s: %s", path, exc)
                        continue
                    report.deleted.append(path)

        logger.info(
            "Scanned %d files: %d duplicate groups, %d redundant pending copies",
            report.scanned_files,
            len(report.groups),
            report.redundant_files,
        )
        return report
