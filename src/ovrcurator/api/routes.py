"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, HTTPException, Query, Request, UploadFile, status

from ovrcurator.api.schemas import (
    ClassifyImageResponse,
    CurationRunRequest,
    CurationRunStatus,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    ProgressSchema,
    VoteSchema,
)
from ovrcurator.errors import ClassificationError, ConfigurationError
from ovrcurator.ml.model_manager import ModelRole
from ovrcurator.models import Accepted

if TYPE_CHECKING:
    from ovrcurator.config import Settings
    from ovrcurator.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


class RunTracker:
    """Holds the background task of the current or last curation run."""

    def __init__(self) -> None:
        self.task: asyncio.Task[object] | None = None
        self.error: str | None = None

    @property
    def state(self) -> str:
        if self.task is None:
            return "idle"
        if not self.task.done():
            return "running"
        return "failed" if self.error is not None else "finished"

    def start(self, coro: object) -> None:
        self.error = None
        self.task = asyncio.create_task(coro)  # type: ignore[arg-type]
        self.task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[object]) -> None:
        if task.cancelled():
            self.error = "cancelled"
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Curation run failed: %s", exc, exc_info=exc)
            self.error = str(exc)


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_runtime(request: Request) -> Runtime:
    runtime: Runtime = request.app.state.runtime
    return runtime


def _get_tracker(request: Request) -> RunTracker:
    tracker: RunTracker = request.app.state.run_tracker
    return tracker


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Run the classification gate on an image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    threshold: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
) -> ClassifyImageResponse:
    """Score an uploaded image with the ensemble and return the gate decision."""
    runtime = _get_runtime(request)
    effective = _get_settings(request).classification_threshold if threshold is None else threshold
    data = await file.read()

    try:
        outcome = await runtime.gate.classify(data, effective)
    except ClassificationError as exc:
        if isinstance(exc.__cause__, TimeoutError):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Inference queue is full, try again later",
            ) from exc
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Cannot classify image: {exc.__cause__ or exc}",
        ) from exc

    votes = [VoteSchema(label=v.label, confidence=v.confidence) for v in outcome.votes]
    if isinstance(outcome, Accepted):
        return ClassifyImageResponse(
            decision="accepted",
            label=outcome.label,
            confidence=outcome.confidence,
            threshold=effective,
            votes=votes,
        )
    return ClassifyImageResponse(
        decision="rejected",
        reason=str(outcome.reason),
        threshold=effective,
        votes=votes,
    )


@router.post(
    "/curation-runs",
    response_model=CurationRunStatus,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    },
    summary="Start a curation run in the background",
)
async def start_curation_run(request: Request, body: CurationRunRequest | None = None) -> CurationRunStatus:
    """Fetch, classify, and store images until the requested count is processed."""
    runtime = _get_runtime(request)
    tracker = _get_tracker(request)
    body = body or CurationRunRequest()

    if tracker.state == "running" or runtime.orchestrator.running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A curation run is already in progress")
    try:
        params = runtime.orchestrator.resolve_parameters(body.total_count, body.batch_size, body.max_retries)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    logger.info("Starting curation run: %s", params)
    tracker.start(
        runtime.orchestrator.run(params.total_count, params.batch_size, params.max_retries, params.threshold)
    )
    return _run_status(runtime, tracker)


@router.get(
    "/curation-runs/current",
    response_model=CurationRunStatus,
    summary="State of the current or last curation run",
)
async def current_curation_run(request: Request) -> CurationRunStatus:
    """Return the live statistics and the latest completion estimate."""
    return _run_status(_get_runtime(request), _get_tracker(request))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    runtime = _get_runtime(request)
    pool = runtime.inference_pool
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=runtime.model_manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        indexed_hashes=len(runtime.index),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List discovered classifier models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return every model file found on disk and whether the gate uses it."""
    runtime = _get_runtime(request)
    gate = runtime.gate
    active = {(ModelRole.ENSEMBLE, member.model_name): member.labels for member in gate.ensemble}
    active.update(
        {(ModelRole.TIE_BREAK, tb.classifier.model_name): tb.classifier.labels for tb in gate.tie_breakers}
    )

    models: list[ModelInfo] = []
    for role in ModelRole:
        for model_file in runtime.model_manager.discover(role):
            labels = active.get((role, model_file.name))
            models.append(
                ModelInfo(
                    name=model_file.name,
                    role=str(role),
                    labels=list(labels or ()),
                    status="active" if labels is not None else "unused",
                )
            )
    return ModelsResponse(models=models)


def _run_status(runtime: Runtime, tracker: RunTracker) -> CurationRunStatus:
    orchestrator = runtime.orchestrator
    progress = orchestrator.progress
    return CurationRunStatus(
        status=tracker.state,  # type: ignore[arg-type]
        error=tracker.error,
        stats=orchestrator.stats.to_dict(),
        progress=None
        if progress is None
        else ProgressSchema(
            completed_batches=progress.completed_batches,
            total_batches=progress.total_batches,
            elapsed_seconds=progress.elapsed_seconds,
            remaining_seconds=progress.remaining_seconds,
            estimated_end=progress.estimated_end,
        ),
    )
