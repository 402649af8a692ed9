"""Component wiring shared by the API service and the command line."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ovrcurator.dedup import DuplicateIndex
from ovrcurator.gate import build_gate
from ovrcurator.ml.inference import InferencePool
from ovrcurator.ml.model_manager import OnnxModelManager
from ovrcurator.ml.preprocessing import ImagePreprocessor
from ovrcurator.pipeline import BatchOrchestrator
from ovrcurator.sources import HttpImageDownloader, HttpImageSource, build_http_client
from ovrcurator.storage import FilesystemStorage

if TYPE_CHECKING:
    import httpx

    from ovrcurator.config import Settings
    from ovrcurator.gate import ClassificationGate
    from ovrcurator.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a curation run needs, built once per process."""

    settings: Settings
    inference_pool: InferencePool
    model_manager: ModelManager
    gate: ClassificationGate
    storage: FilesystemStorage
    index: DuplicateIndex
    http_client: httpx.AsyncClient
    orchestrator: BatchOrchestrator

    async def aclose(self) -> None:
        await self.http_client.aclose()
        self.inference_pool.shutdown()
        self.model_manager.shutdown()


def build_runtime(settings: Settings) -> Runtime:
    """Load the models and assemble the pipeline.

    Raises:
        ModelNotFoundError: If no ensemble model is available.
        ModelLoadError: If a model cannot be loaded.
    """
    pool = InferencePool(settings)
    manager = OnnxModelManager(settings)
    try:
        gate = build_gate(settings, manager, pool, ImagePreprocessor(settings))
    except Exception:
        pool.shutdown()
        raise

    storage = FilesystemStorage(settings)
    index = DuplicateIndex(storage)
    client = build_http_client(settings)
    orchestrator = BatchOrchestrator(
        settings,
        source=HttpImageSource(client, settings),
        downloader=HttpImageDownloader(client),
        gate=gate,
        index=index,
        storage=storage,
    )
    return Runtime(
        settings=settings,
        inference_pool=pool,
        model_manager=manager,
        gate=gate,
        storage=storage,
        index=index,
        http_client=client,
        orchestrator=orchestrator,
    )
