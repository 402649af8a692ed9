"""Tests for the batch orchestrator."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ovrcurator.config import Settings
from ovrcurator.dedup import DuplicateIndex
from ovrcurator.errors import ClassificationError, ConfigurationError, StorageError, TransientNetworkError
from ovrcurator.hashing import content_hash
from ovrcurator.models import (
    Accepted,
    DecisionOutcome,
    ImageReference,
    ProgressEstimate,
    Rejected,
    RejectReason,
)
from ovrcurator.pipeline import BatchOrchestrator
from ovrcurator.storage import FilesystemStorage, Partition

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "dataset_dir": str(tmp_path / "Dataset"),
        "total_count": 10,
        "batch_size": 10,
        "min_batch_size": 10,
        "max_retries": 3,
        "retry_delay": 3.0,
        "classification_threshold": 0.85,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _ref(name: str) -> ImageReference:
    return ImageReference(id=name, url=f"https://cdn.example.com/images/{name}", width=100, height=100)


class FakeSource:
    """Serves pre-built batches; an exception entry is raised instead of returned."""

    def __init__(self, *pages: list[ImageReference] | Exception) -> None:
        self._pages = list(pages)
        self.calls: list[tuple[int, int]] = []

    async def fetch_references(self, count: int, page_size: int) -> list[ImageReference]:
        self.calls.append((count, page_size))
        page = self._pages.pop(0) if self._pages else []
        if isinstance(page, Exception):
            raise page
        return page


class FakeDownloader:
    def __init__(self, failures: dict[str, int] | None = None, content: dict[str, bytes] | None = None) -> None:
        self._failures = dict(failures or {})
        self._content = content or {}
        self.attempts: dict[str, int] = {}

    async def download(self, reference: ImageReference) -> bytes:
        self.attempts[reference.file_name] = self.attempts.get(reference.file_name, 0) + 1
        remaining = self._failures.get(reference.file_name, 0)
        if remaining:
            self._failures[reference.file_name] = remaining - 1
            raise TransientNetworkError(f"connection reset for {reference.file_name}")
        return self._content.get(reference.file_name, reference.file_name.encode())


class FakeGate:
    def __init__(self, outcomes: dict[bytes, DecisionOutcome | Exception] | None = None) -> None:
        self._outcomes = outcomes or {}
        self.seen: list[bytes] = []
        self.thresholds: list[float] = []

    async def classify(self, image_bytes: bytes, threshold: float) -> DecisionOutcome:
        self.seen.append(image_bytes)
        self.thresholds.append(threshold)
        outcome = self._outcomes.get(image_bytes, Rejected(RejectReason.NO_WINNER))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _build(
    settings: Settings,
    source: FakeSource,
    downloader: FakeDownloader | None = None,
    gate: FakeGate | None = None,
    storage: FilesystemStorage | None = None,
    **kwargs: object,
) -> tuple[BatchOrchestrator, DuplicateIndex, FilesystemStorage, FakeSleep]:
    storage = storage or FilesystemStorage(settings)
    index = DuplicateIndex(storage)
    sleep = FakeSleep()
    orchestrator = BatchOrchestrator(
        settings,
        source=source,
        downloader=downloader or FakeDownloader(),
        gate=gate or FakeGate(),  # type: ignore[arg-type]
        index=index,
        storage=storage,
        sleep=sleep,
        **kwargs,  # type: ignore[arg-type]
    )
    return orchestrator, index, storage, sleep


# ---------------------------------------------------------------------------
# Parameters and batching
# ---------------------------------------------------------------------------


class TestRunParameters:
    async def test_batch_size_below_minimum_fails_before_fetching(self, tmp_path: Path) -> None:
        source = FakeSource([_ref("a.jpg")])
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), source)

        with pytest.raises(ConfigurationError, match="batch_size"):
            await orchestrator.run(batch_size=5)
        assert source.calls == []

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"total_count": 0}, "total_count"),
            ({"max_retries": 0}, "max_retries"),
            ({"threshold": 1.5}, "threshold"),
        ],
    )
    async def test_invalid_parameters_raise(self, tmp_path: Path, overrides: dict[str, object], message: str) -> None:
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), FakeSource())
        with pytest.raises(ConfigurationError, match=message):
            await orchestrator.run(**overrides)  # type: ignore[arg-type]

    def test_defaults_come_from_settings(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path, total_count=40, batch_size=20, max_retries=5)
        orchestrator, _, _, _ = _build(settings, FakeSource())

        params = orchestrator.resolve_parameters()

        assert (params.total_count, params.batch_size, params.max_retries, params.threshold) == (40, 20, 5, 0.85)

    async def test_batches_cover_total_count(self, tmp_path: Path) -> None:
        source = FakeSource([], [], [])
        orchestrator, _, _, _ = _build(_make_settings(tmp_path, source_page_size=7), source)

        await orchestrator.run(total_count=25, batch_size=10)

        assert source.calls == [(10, 7), (10, 7), (5, 7)]

    async def test_index_initialized_once_before_first_fetch(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)
        storage = FilesystemStorage(settings)
        storage.save(b"already stored", "old.jpg", "happy")
        events: list[str] = []

        class RecordingSource(FakeSource):
            async def fetch_references(self, count: int, page_size: int) -> list[ImageReference]:
                events.append("fetch")
                return await super().fetch_references(count, page_size)

        orchestrator, index, _, _ = _build(settings, RecordingSource([], []), storage=storage)
        real_initialize = index.initialize

        def _initialize() -> None:
            events.append("initialize")
            real_initialize()

        index.initialize = _initialize  # type: ignore[method-assign]

        await orchestrator.run(total_count=20, batch_size=10)

        assert events == ["initialize", "fetch", "fetch"]
        assert content_hash(b"already stored") in index


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_fetch_exhaustion_skips_batch(self, tmp_path: Path) -> None:
        error = TransientNetworkError("503")
        source = FakeSource(error, error, error, [_ref("b.jpg")])
        orchestrator, _, _, sleep = _build(_make_settings(tmp_path), source)

        stats = await orchestrator.run(total_count=20, batch_size=10)

        assert len(source.calls) == 4
        assert stats.failed_url_fetches == 10
        assert stats.fetched_urls == 1
        assert stats.processed_images == 1
        assert sleep.delays == [3.0, 3.0]

    async def test_unexpected_fetch_error_skips_only_that_batch(self, tmp_path: Path) -> None:
        source = FakeSource(RuntimeError("unexpected listing failure"), [_ref("a.jpg")])
        orchestrator, _, _, sleep = _build(_make_settings(tmp_path), source)

        stats = await orchestrator.run(total_count=20, batch_size=10)

        assert len(source.calls) == 2
        assert stats.failed_url_fetches == 10
        assert stats.fetched_urls == 1
        assert stats.processed_images == 1
        assert sleep.delays == []
        assert orchestrator.progress is not None
        assert orchestrator.progress.completed_batches == 2

    async def test_fetch_recovers_after_retry(self, tmp_path: Path) -> None:
        source = FakeSource(TransientNetworkError("timeout"), [_ref("a.jpg"), _ref("b.jpg")])
        orchestrator, _, _, sleep = _build(_make_settings(tmp_path), source)

        stats = await orchestrator.run()

        assert stats.failed_url_fetches == 0
        assert stats.fetched_urls == 2
        assert sleep.delays == [3.0]

    async def test_download_exhaustion_is_counted_not_fatal(self, tmp_path: Path) -> None:
        downloader = FakeDownloader(failures={"broken.jpg": 99})
        gate = FakeGate({b"ok.jpg": Accepted("happy", 0.95)})
        source = FakeSource([_ref("broken.jpg"), _ref("ok.jpg")])
        orchestrator, _, _, sleep = _build(_make_settings(tmp_path, max_retries=4), source, downloader, gate)

        stats = await orchestrator.run()

        assert downloader.attempts["broken.jpg"] == 4
        assert stats.failed_downloads == 1
        assert stats.label_counts == {"happy": 1}
        assert sleep.delays == [3.0, 3.0, 3.0]

    async def test_download_recovers_after_retry(self, tmp_path: Path) -> None:
        downloader = FakeDownloader(failures={"flaky.jpg": 2})
        gate = FakeGate({b"flaky.jpg": Accepted("happy", 0.95)})
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), FakeSource([_ref("flaky.jpg")]), downloader, gate)

        stats = await orchestrator.run()

        assert downloader.attempts["flaky.jpg"] == 3
        assert stats.failed_downloads == 0
        assert stats.accepted == 1


# ---------------------------------------------------------------------------
# Per-image pipeline
# ---------------------------------------------------------------------------


class TestImagePipeline:
    async def test_accepted_image_is_saved_and_indexed(self, tmp_path: Path) -> None:
        gate = FakeGate({b"cat.jpg": Accepted("happy", 0.93)})
        orchestrator, index, storage, _ = _build(_make_settings(tmp_path), FakeSource([_ref("cat.jpg")]), gate=gate)

        stats = await orchestrator.run()

        assert storage.exists("cat.jpg", "happy", Partition.PENDING)
        assert content_hash(b"cat.jpg") in index
        assert stats.label_counts == {"happy": 1}
        assert gate.thresholds == [0.85]

    async def test_unsupported_format_skips_classification(self, tmp_path: Path) -> None:
        gate = FakeGate()
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), FakeSource([_ref("anim.gif")]), gate=gate)

        stats = await orchestrator.run()

        assert stats.invalid_formats == 1
        assert gate.seen == []

    async def test_rejections_are_counted(self, tmp_path: Path) -> None:
        gate = FakeGate(
            {
                b"both.jpg": Rejected(RejectReason.MULTIPLE_WINNERS),
                b"none.jpg": Rejected(RejectReason.NO_WINNER),
            }
        )
        source = FakeSource([_ref("both.jpg"), _ref("none.jpg")])
        orchestrator, index, storage, _ = _build(_make_settings(tmp_path), source, gate=gate)

        stats = await orchestrator.run()

        assert stats.multiple_winners == 1
        assert stats.no_winner == 1
        assert stats.accepted == 0
        assert len(index) == 0
        assert storage.list_image_files(Partition.PENDING) == []

    async def test_same_content_twice_in_one_run_is_duplicate(self, tmp_path: Path) -> None:
        downloader = FakeDownloader(content={"one.jpg": b"same", "two.jpg": b"same"})
        gate = FakeGate({b"same": Accepted("happy", 0.9)})
        source = FakeSource([_ref("one.jpg"), _ref("two.jpg")])
        orchestrator, _, storage, _ = _build(_make_settings(tmp_path), source, downloader, gate)

        stats = await orchestrator.run()

        assert stats.label_counts == {"happy": 1}
        assert stats.duplicate_contents == 1
        assert not storage.exists("two.jpg", "happy", Partition.PENDING)

    async def test_existing_file_name_is_duplicate(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)
        storage = FilesystemStorage(settings)
        confirmed = storage.partition_dir(Partition.CONFIRMED) / "happy" / "cat.jpg"
        confirmed.parent.mkdir(parents=True)
        confirmed.write_bytes(b"different bytes")
        gate = FakeGate({b"cat.jpg": Accepted("happy", 0.9)})
        orchestrator, _, _, _ = _build(settings, FakeSource([_ref("cat.jpg")]), gate=gate, storage=storage)

        stats = await orchestrator.run()

        assert stats.duplicate_names == 1
        assert stats.accepted == 0
        assert not storage.exists("cat.jpg", "happy", Partition.PENDING)

    async def test_classification_error_skips_image(self, tmp_path: Path) -> None:
        gate = FakeGate(
            {
                b"bad.jpg": ClassificationError("model crashed"),
                b"good.jpg": Accepted("sad", 0.97),
            }
        )
        source = FakeSource([_ref("bad.jpg"), _ref("good.jpg")])
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), source, gate=gate)

        stats = await orchestrator.run()

        assert stats.failed_images == 1
        assert stats.label_counts == {"sad": 1}
        assert gate.seen == [b"bad.jpg", b"good.jpg"]

    async def test_failed_save_does_not_mark_image_known(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)
        storage = FilesystemStorage(settings)
        storage.save = MagicMock(side_effect=StorageError("disk full"))  # type: ignore[method-assign]
        gate = FakeGate({b"cat.jpg": Accepted("happy", 0.9)})
        orchestrator, index, _, _ = _build(settings, FakeSource([_ref("cat.jpg")]), gate=gate, storage=storage)

        stats = await orchestrator.run()

        assert stats.failed_images == 1
        assert stats.accepted == 0
        assert content_hash(b"cat.jpg") not in index


# ---------------------------------------------------------------------------
# Progress and run state
# ---------------------------------------------------------------------------


class TestProgress:
    async def test_progress_reported_after_each_batch(self, tmp_path: Path) -> None:
        estimates: list[ProgressEstimate] = []
        orchestrator, _, _, _ = _build(
            _make_settings(tmp_path),
            FakeSource([_ref("a.jpg")], [_ref("b.jpg")], [_ref("c.jpg")]),
            on_progress=estimates.append,
        )

        stats = await orchestrator.run(total_count=30, batch_size=10)

        assert [e.completed_batches for e in estimates] == [1, 2, 3]
        assert all(e.total_batches == 3 for e in estimates)
        assert estimates[-1].remaining_seconds == 0
        assert orchestrator.progress == estimates[-1]
        assert stats.total_processing_seconds == pytest.approx(estimates[-1].elapsed_seconds)

    async def test_running_flag_resets_after_run(self, tmp_path: Path) -> None:
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), FakeSource([]))
        assert orchestrator.running is False
        await orchestrator.run()
        assert orchestrator.running is False

    async def test_summary_lists_every_skip_category(self, tmp_path: Path) -> None:
        gate = FakeGate({b"a.jpg": Accepted("happy", 0.9)})
        source = FakeSource([_ref("a.jpg"), _ref("b.gif"), _ref("c.jpg")])
        orchestrator, _, _, _ = _build(_make_settings(tmp_path), source, gate=gate)

        stats = await orchestrator.run()
        lines = stats.summary_lines()

        assert "Saved images: 1" in lines
        assert "  happy: 1" in lines
        assert "  Invalid format: 1" in lines
        assert "  No label above threshold: 1" in lines
