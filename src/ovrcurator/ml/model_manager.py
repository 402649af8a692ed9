"""Model manager: download, discover, load, and cache ONNX classifiers.

Ensemble (one-vs-rest) models live under ``<models_dir>/<ensemble_subdir>``
and tie-break (pairwise) models under ``<models_dir>/<tie_break_subdir>``.
When ``models_repo`` is configured the whole tree is pulled from the
HuggingFace Hub first.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import snapshot_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from ovrcurator.errors import ModelLoadError

if TYPE_CHECKING:
    from ovrcurator.config import Settings

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".onnx"
LABELS_SUFFIX = ".labels.json"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self) -> Path:
        """Make sure the model tree is present locally and return its root."""
        ...

    def discover(self, role: ModelRole) -> list[ModelFile]:
        """List the model files available for a role."""
        ...

    def get_session(self, model: ModelFile) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model files
# ---------------------------------------------------------------------------


class ModelRole(StrEnum):
    ENSEMBLE = "ensemble"
    TIE_BREAK = "tie_break"


@dataclass(frozen=True)
class ModelFile:
    """A discovered ONNX model on disk."""

    name: str
    path: Path
    role: ModelRole

    @property
    def labels_path(self) -> Path:
        """Optional sidecar JSON list of class labels, in output order."""
        return self.path.with_name(self.name + LABELS_SUFFIX)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Discovers, loads, and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._role_dirs = {
            ModelRole.ENSEMBLE: self._models_dir / settings.ensemble_subdir,
            ModelRole.TIE_BREAK: self._models_dir / settings.tie_break_subdir,
        }

        self._lock = threading.Lock()
        self._sessions: dict[Path, tuple[ModelFile, InferenceSession]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self) -> Path:
        """Pull the model tree from HuggingFace when a repo is configured."""
        repo_id = self._settings.models_repo
        if repo_id is None:
            return self._models_dir

        self._models_dir.mkdir(parents=True, exist_ok=True)
        patterns = [f"{directory.name}/*" for directory in self._role_dirs.values()]
        downloaded = Path(
            snapshot_download(
                repo_id=repo_id,
                allow_patterns=patterns,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", repo_id, downloaded)
        return downloaded

    def discover(self, role: ModelRole) -> list[ModelFile]:
        """Return the model files for ``role``, sorted by name. A missing directory yields none."""
        directory = self._role_dirs[role]
        if not directory.is_dir():
            logger.info("No %s model directory at %s", role, directory)
            return []
        return [
            ModelFile(name=path.stem, path=path, role=role)
            for path in sorted(directory.iterdir())
            if path.suffix == MODEL_SUFFIX and path.is_file()
        ]

    def get_session(self, model: ModelFile) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed.

        Sessions are cached per file path; models in different role
        directories may share a name.
        """
        with self._lock:
            cached = self._sessions.get(model.path)
            if cached is not None:
                return cached[1]

        try:
            session = InferenceSession(
                str(model.path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model '{model.name}' from {model.path}: {exc}") from exc

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model.path)
            if existing is not None:
                return existing[1]
            self._sessions[model.path] = (model, session)
            logger.info("Loaded session for %s (%s)", model.name, model.role)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return [model.name for model, _ in self._sessions.values()]

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
