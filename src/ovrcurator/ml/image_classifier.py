"""Binary image classifiers backed by ONNX Runtime.

Each ensemble model is a one-vs-rest classifier: it scores its own positive
label against the reserved negative label. Tie-break models score two easily
confused labels against each other. Both produce one vote per output class.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from ovrcurator.errors import ModelLoadError
from ovrcurator.models import ClassificationVote

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from ovrcurator.ml.model_manager import ModelFile
    from ovrcurator.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)

LABELS_METADATA_KEY = "labels"


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the class labels in output order."""
        ...

    def classify(self, image_bytes: bytes) -> list[ClassificationVote]:
        """Classify an image and return one vote per class label.

        Args:
            image_bytes: Raw encoded image (JPEG or PNG).

        Returns:
            Votes sorted by confidence (descending).
        """
        ...


class OnnxImageClassifier:
    """Runs one ONNX classification model on raw image bytes."""

    def __init__(
        self,
        name: str,
        session: InferenceSession,
        labels: tuple[str, ...],
        preprocessor: ImagePreprocessor,
    ) -> None:
        if len(labels) < 2:
            raise ModelLoadError(f"Model '{name}' needs at least two labels, got {list(labels)}")
        self._name = name
        self._session = session
        self._labels = labels
        self._preprocessor = preprocessor
        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._input_shape = list(model_input.shape)

    @classmethod
    def load(cls, model: ModelFile, session: InferenceSession, preprocessor: ImagePreprocessor) -> OnnxImageClassifier:
        return cls(model.name, session, read_labels(model, session), preprocessor)

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def classify(self, image_bytes: bytes) -> list[ClassificationVote]:
        image = self._preprocessor.decode_image(image_bytes)
        tensor = self._preprocessor.to_tensor(image, self._input_shape)
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = to_probabilities(np.asarray(outputs[0], dtype=np.float32).reshape(-1))
        if scores.shape[0] != len(self._labels):
            raise ValueError(
                f"Model '{self._name}' returned {scores.shape[0]} scores for {len(self._labels)} labels"
            )
        votes = [
            ClassificationVote(label=label, confidence=float(score))
            for label, score in zip(self._labels, scores, strict=True)
        ]
        return sorted(votes, key=lambda vote: vote.confidence, reverse=True)


def to_probabilities(raw: NDArray[np.float32]) -> NDArray[np.float32]:
    """Turn raw model output into class probabilities.

    A single value is treated as the positive-class score of a sigmoid head and
    expanded to ``[p, 1 - p]``. Outputs that already form a distribution are
    returned unchanged; anything else goes through a softmax.
    """
    if raw.shape[0] == 1:
        value = float(raw[0])
        p = value if 0.0 <= value <= 1.0 else 1.0 / (1.0 + np.exp(-value))
        return np.array([p, 1.0 - p], dtype=np.float32)

    if np.all(raw >= 0.0) and np.all(raw <= 1.0) and abs(float(raw.sum()) - 1.0) < 1e-3:
        return raw
    shifted = np.exp(raw - raw.max())
    return (shifted / shifted.sum()).astype(np.float32)


def read_labels(model: ModelFile, session: InferenceSession) -> tuple[str, ...]:
    """Read class labels from model metadata, falling back to a sidecar JSON file.

    Metadata may hold a JSON list or a comma-separated string under ``labels``.

    Raises:
        ModelLoadError: If neither source provides labels.
    """
    metadata = session.get_modelmeta().custom_metadata_map
    raw = metadata.get(LABELS_METADATA_KEY)
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, list):
            parsed = raw.split(",")
        return tuple(str(label).strip() for label in parsed)

    if model.labels_path.is_file():
        try:
            parsed = json.loads(model.labels_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ModelLoadError(f"Invalid labels file {model.labels_path}: {exc}") from exc
        return tuple(str(label).strip() for label in parsed)

    raise ModelLoadError(
        f"Model '{model.name}' has no '{LABELS_METADATA_KEY}' metadata and no {model.labels_path.name}"
    )
