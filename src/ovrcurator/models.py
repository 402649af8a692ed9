"""Domain types passed between the curation pipeline components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import PurePosixPath
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict


class ImageReference(BaseModel):
    """A candidate image as returned by the image source."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    url: str
    width: int = 0
    height: int = 0

    @property
    def file_name(self) -> str:
        """Last path component of the URL."""
        return PurePosixPath(urlparse(self.url).path).name

    @property
    def extension(self) -> str:
        """Lower-cased file extension without the dot ('' when absent)."""
        return PurePosixPath(self.file_name).suffix.lstrip(".").lower()


@dataclass(frozen=True)
class ImageAsset:
    """Downloaded image bytes with the name and format derived from the source URL."""

    data: bytes = field(repr=False)
    file_name: str
    format: str

    @classmethod
    def from_reference(cls, reference: ImageReference, data: bytes) -> ImageAsset:
        return cls(data=data, file_name=reference.file_name, format=reference.extension)


@dataclass(frozen=True)
class ClassificationVote:
    """Confidence reported by one classifier for one label."""

    label: str
    confidence: float


class RejectReason(StrEnum):
    MULTIPLE_WINNERS = "multiple_winners"
    NO_WINNER = "no_winner"


@dataclass(frozen=True)
class Accepted:
    """Exactly one label cleared the threshold."""

    label: str
    confidence: float
    votes: tuple[ClassificationVote, ...] = ()


@dataclass(frozen=True)
class Rejected:
    """The image does not belong unambiguously to one label."""

    reason: RejectReason
    votes: tuple[ClassificationVote, ...] = ()


DecisionOutcome = Accepted | Rejected


class DuplicateKind(StrEnum):
    NAME = "name"
    CONTENT = "content"


@dataclass
class ProcessingStats:
    """Counters for one curation run. Mutated only by the orchestrator."""

    fetched_urls: int = 0
    failed_url_fetches: int = 0
    processed_images: int = 0
    failed_downloads: int = 0
    invalid_formats: int = 0
    duplicate_names: int = 0
    duplicate_contents: int = 0
    multiple_winners: int = 0
    no_winner: int = 0
    failed_images: int = 0
    label_counts: dict[str, int] = field(default_factory=dict)
    total_processing_seconds: float = 0.0

    @property
    def accepted(self) -> int:
        return sum(self.label_counts.values())

    @property
    def duplicates(self) -> int:
        return self.duplicate_names + self.duplicate_contents

    def record_accepted(self, label: str) -> None:
        self.label_counts[label] = self.label_counts.get(label, 0) + 1

    def skip_counts(self) -> dict[str, int]:
        """Every skip category keyed by a human-readable name, in report order."""
        return {
            "URL fetch failed": self.failed_url_fetches,
            "Download failed": self.failed_downloads,
            "Invalid format": self.invalid_formats,
            "Duplicate file name": self.duplicate_names,
            "Duplicate content": self.duplicate_contents,
            "Multiple labels above threshold": self.multiple_winners,
            "No label above threshold": self.no_winner,
            "Processing error": self.failed_images,
        }

    def summary_lines(self) -> list[str]:
        lines = [
            f"Processing time: {self.total_processing_seconds:.1f}s",
            f"Fetched URLs: {self.fetched_urls}",
            f"Processed images: {self.processed_images}",
            f"Saved images: {self.accepted}",
        ]
        for label, count in sorted(self.label_counts.items()):
            lines.append(f"  {label}: {count}")
        skipped = {name: count for name, count in self.skip_counts().items() if count > 0}
        if skipped:
            lines.append("Skipped:")
            lines.extend(f"  {name}: {count}" for name, count in skipped.items())
        return lines

    def to_dict(self) -> dict[str, object]:
        return {
            "fetched_urls": self.fetched_urls,
            "failed_url_fetches": self.failed_url_fetches,
            "processed_images": self.processed_images,
            "failed_downloads": self.failed_downloads,
            "invalid_formats": self.invalid_formats,
            "duplicate_names": self.duplicate_names,
            "duplicate_contents": self.duplicate_contents,
            "multiple_winners": self.multiple_winners,
            "no_winner": self.no_winner,
            "failed_images": self.failed_images,
            "accepted": self.accepted,
            "label_counts": dict(self.label_counts),
            "total_processing_seconds": self.total_processing_seconds,
        }


@dataclass(frozen=True)
class ProgressEstimate:
    """Projected completion after a finished batch. Used for reporting only."""

    batch_index: int
    total_batches: int
    batch_seconds: float
    elapsed_seconds: float
    remaining_seconds: float
    estimated_end: datetime

    @property
    def completed_batches(self) -> int:
        return self.batch_index + 1

    @property
    def remaining_hms(self) -> str:
        total = int(self.remaining_seconds)
        return f"{total // 3600}h{(total % 3600) // 60:02d}m{total % 60:02d}s"
