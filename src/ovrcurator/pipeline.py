"""Batch orchestration of the curation pipeline.

Per run::

    Init -> FetchingBatch -> ClassifyingBatch -> ... -> Done

Each batch fetches a page of references and processes the images one at a
time: download -> validate -> classify -> dedup check -> save -> index update.
Listing and download calls are retried on ``TransientNetworkError`` with a
fixed delay. Exhausted retries, rejections, and unexpected batch or
per-image errors are counted in ``ProcessingStats`` and never abort the run.
Only invalid run parameters and startup failures propagate.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from ovrcurator.errors import ConfigurationError, TransientNetworkError
from ovrcurator.models import (
    DuplicateKind,
    ImageAsset,
    ProcessingStats,
    ProgressEstimate,
    Rejected,
    RejectReason,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ovrcurator.config import Settings
    from ovrcurator.dedup import DuplicateIndex
    from ovrcurator.gate import ClassificationGate
    from ovrcurator.models import ImageReference
    from ovrcurator.sources import ImageDownloader, ImageSource
    from ovrcurator.storage import DatasetStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RunParameters:
    total_count: int
    batch_size: int
    max_retries: int
    threshold: float


class BatchOrchestrator:
    """Drives curation runs. Not reentrant: one run at a time."""

    def __init__(
        self,
        settings: Settings,
        *,
        source: ImageSource,
        downloader: ImageDownloader,
        gate: ClassificationGate,
        index: DuplicateIndex,
        storage: DatasetStorage,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_progress: Callable[[ProgressEstimate], None] | None = None,
    ) -> None:
        self._settings = settings
        self._source = source
        self._downloader = downloader
        self._gate = gate
        self._index = index
        self._storage = storage
        self._sleep = sleep
        self._on_progress = on_progress
        self._extensions = frozenset(ext.lower().lstrip(".") for ext in settings.supported_extensions)

        self._running = False
        self.stats = ProcessingStats()
        self.progress: ProgressEstimate | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def run(
        self,
        total_count: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        threshold: float | None = None,
    ) -> ProcessingStats:
        """Curate ``total_count`` images in batches of ``batch_size``.

        Arguments left as None fall back to the settings.

        Raises:
            ConfigurationError: On invalid parameters, before any network call.
            RuntimeError: If a run is already in progress.
            StorageError: If an existing partition cannot be read while the
                duplicate index is rebuilt.
        """
        params = self.resolve_parameters(total_count, batch_size, max_retries, threshold)

        if self._running:
            raise RuntimeError("A curation run is already in progress")
        self._running = True
        self.stats = ProcessingStats()
        self.progress = None
        try:
            await self._run(params)
        finally:
            self._running = False

        logger.info("Curation run finished")
        for line in self.stats.summary_lines():
            logger.info(line)
        return self.stats

    def resolve_parameters(
        self,
        total_count: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        threshold: float | None = None,
    ) -> RunParameters:
        """Fill in defaults from the settings and validate.

        Raises:
            ConfigurationError: If a value is out of range.
        """
        settings = self._settings
        params = RunParameters(
            total_count=settings.total_count if total_count is None else total_count,
            batch_size=settings.batch_size if batch_size is None else batch_size,
            max_retries=settings.max_retries if max_retries is None else max_retries,
            threshold=settings.classification_threshold if threshold is None else threshold,
        )
        if params.batch_size < settings.min_batch_size:
            raise ConfigurationError(f"batch_size must be at least {settings.min_batch_size}, got {params.batch_size}")
        if params.total_count < 1:
            raise ConfigurationError(f"total_count must be positive, got {params.total_count}")
        if params.max_retries < 1:
            raise ConfigurationError(f"max_retries must be at least 1, got {params.max_retries}")
        if not 0.0 <= params.threshold <= 1.0:
            raise ConfigurationError(f"threshold must be within [0, 1], got {params.threshold}")
        return params

    async def _run(self, params: RunParameters) -> None:
        stats = self.stats
        await asyncio.to_thread(self._index.initialize)

        total_batches = math.ceil(params.total_count / params.batch_size)
        logger.info(
            "Curating %d images in %d batches of %d",
            params.total_count,
            total_batches,
            params.batch_size,
        )

        for batch_index in range(total_batches):
            batch_start = time.monotonic()
            start = batch_index * params.batch_size
            requested = min(params.batch_size, params.total_count - start)
            logger.info(
                "Batch %d/%d: images %d-%d",
                batch_index + 1,
                total_batches,
                start + 1,
                start + requested,
            )

            try:
                references = await self._with_retries(
                    lambda n=requested: self._source.fetch_references(n, self._settings.source_page_size),
                    f"Fetching batch {batch_index + 1}",
                    params.max_retries,
                )
            except Exception:
                logger.exception("Fetching batch %d failed", batch_index + 1)
                references = None
            if references is None:
                stats.failed_url_fetches += requested
            else:
                stats.fetched_urls += len(references)
                logger.info("Fetched %d image URLs", len(references))
                for reference in references:
                    try:
                        await self._process_image(reference, params)
                    except Exception:
                        logger.exception("Failed to process %s", reference.url)
                        stats.failed_images += 1

            batch_seconds = time.monotonic() - batch_start
            stats.total_processing_seconds += batch_seconds
            self._report_progress(batch_index, total_batches, batch_seconds)

    async def _process_image(
        self,
        reference: ImageReference,
        params: RunParameters,
    ) -> None:
        stats = self.stats
        stats.processed_images += 1
        logger.info("Processing %s (%d/%d)", reference.url, stats.processed_images, params.total_count)

        data = await self._with_retries(
            lambda: self._downloader.download(reference),
            f"Downloading {reference.file_name}",
            params.max_retries,
        )
        if data is None:
            stats.failed_downloads += 1
            return

        asset = ImageAsset.from_reference(reference, data)
        if asset.format not in self._extensions:
            logger.info("Skipping %s: unsupported format %r", asset.file_name, asset.format)
            stats.invalid_formats += 1
            return

        outcome = await self._gate.classify(asset.data, params.threshold)
        if isinstance(outcome, Rejected):
            if outcome.reason is RejectReason.MULTIPLE_WINNERS:
                stats.multiple_winners += 1
            else:
                stats.no_winner += 1
            logger.info("Rejected %s: %s", asset.file_name, outcome.reason)
            return

        duplicate = self._index.check(asset.data, asset.file_name, outcome.label)
        if duplicate is DuplicateKind.NAME:
            stats.duplicate_names += 1
            return
        if duplicate is DuplicateKind.CONTENT:
            stats.duplicate_contents += 1
            return

        self._storage.save(asset.data, asset.file_name, outcome.label)
        # Only mark as known once the file is on disk.
        self._index.record_accepted(asset.data)
        stats.record_accepted(outcome.label)
        logger.info("Saved %s as %s (%.3f)", asset.file_name, outcome.label, outcome.confidence)

    async def _with_retries(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        max_retries: int,
    ) -> T | None:
        """Run ``operation`` up to ``max_retries`` times. Returns None when every attempt failed."""
        for attempt in range(1, max_retries + 1):
            try:
                return await operation()
            except TransientNetworkError as exc:
                if attempt >= max_retries:
                    logger.error("%s failed %d times, skipping: %s", description, max_retries, exc)
                    break
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    max_retries,
                    self._settings.retry_delay,
                    exc,
                )
                await self._sleep(self._settings.retry_delay)
        return None

    def _report_progress(self, batch_index: int, total_batches: int, batch_seconds: float) -> None:
        elapsed = self.stats.total_processing_seconds
        completed = batch_index + 1
        remaining = (elapsed / completed) * (total_batches - completed)
        estimate = ProgressEstimate(
            batch_index=batch_index,
            total_batches=total_batches,
            batch_seconds=batch_seconds,
            elapsed_seconds=elapsed,
            remaining_seconds=remaining,
            estimated_end=datetime.now() + timedelta(seconds=remaining),
        )
        self.progress = estimate
        logger.info(
            "Batch %d/%d done in %.1fs, estimated end %s (%s remaining)",
            completed,
            total_batches,
            batch_seconds,
            estimate.estimated_end.strftime("%Y-%m-%d %H:%M:%S"),
            estimate.remaining_hms,
        )
        if self._on_progress is not None:
            self._on_progress(estimate)
