"""Filesystem dataset storage with pending and confirmed partitions.

Layout::

    <dataset_dir>/<pending_dir>/<label>/<file_name>
    <dataset_dir>/<confirmed_dir>/<label>/<file_name>

New images are always written to the pending partition. Promotion to the
confirmed partition is an operator action outside this package.
"""

from __future__ import annotations

import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ovrcurator.errors import StorageError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ovrcurator.config import Settings

logger = logging.getLogger(__name__)


class Partition(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class DatasetStorage(Protocol):
    """Protocol for the labeled dataset store."""

    def exists(self, file_name: str, label: str, partition: Partition) -> bool:
        """Return whether ``label/file_name`` exists in the partition."""
        ...

    def save(self, data: bytes, file_name: str, label: str) -> Path:
        """Write an image under ``label`` in the pending partition."""
        ...

    def list_image_files(self, partition: Partition) -> list[Path]:
        """Return every supported image file in the partition, recursively."""
        ...

    def read_bytes(self, path: Path) -> bytes:
        """Read one stored file."""
        ...

    def delete(self, path: Path) -> None:
        """Remove one stored file."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class FilesystemStorage:
    """Stores images as plain files under a dataset root directory."""

    def __init__(self, settings: Settings) -> None:
        self._root = Path(settings.dataset_dir)
        self._partition_dirs = {
            Partition.PENDING: self._root / settings.pending_dir,
            Partition.CONFIRMED: self._root / settings.confirmed_dir,
        }
        self._extensions = _normalize_extensions(settings.supported_extensions)

    @property
    def root(self) -> Path:
        return self._root

    def partition_dir(self, partition: Partition) -> Path:
        return self._partition_dirs[partition]

    def exists(self, file_name: str, label: str, partition: Partition) -> bool:
        return (self.partition_dir(partition) / label / file_name).is_file()

    def save(self, data: bytes, file_name: str, label: str) -> Path:
        label_dir = self.partition_dir(Partition.PENDING) / label
        path = label_dir / file_name
        try:
            label_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to save {path}: {exc}") from exc
        logger.debug("Saved %s", path)
        return path

    def list_image_files(self, partition: Partition) -> list[Path]:
        base = self.partition_dir(partition)
        if not base.exists():
            return []
        if not base.is_dir():
            raise StorageError(f"Partition path is not a directory: {base}")

        def _on_error(exc: OSError) -> None:
            if exc.filename is None or Path(exc.filename) == base:
                raise StorageError(f"Failed to enumerate {base}: {exc}") from exc
            logger.warning("Skipping unreadable directory %s: %s", exc.filename, exc)

        files: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(base, onerror=_on_error):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if name.startswith("."):
                    continue
                if Path(name).suffix.lstrip(".").lower() in self._extensions:
                    files.append(Path(dirpath) / name)
        return files

    def read_bytes(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    def delete(self, path: Path) -> None:
        try:
            path.unlink()
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc
        logger.info("Deleted %s", path)


def _normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    return frozenset(ext.lower().lstrip(".") for ext in extensions)
