"""Ensemble classification gate.

Every one-vs-rest classifier in the ensemble scores the same image
concurrently. The image is accepted only when exactly one label clears the
threshold. When that single label is one known to be confused with a
neutral state, a pairwise tie-break classifier gets a second look before the
decision is final.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from ovrcurator.errors import ClassificationError, ModelNotFoundError
from ovrcurator.ml.image_classifier import OnnxImageClassifier
from ovrcurator.ml.model_manager import ModelRole
from ovrcurator.models import Accepted, ClassificationVote, DecisionOutcome, Rejected, RejectReason

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from ovrcurator.config import Settings
    from ovrcurator.ml.image_classifier import ImageClassifier
    from ovrcurator.ml.inference import InferencePool
    from ovrcurator.ml.model_manager import ModelManager
    from ovrcurator.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TieBreaker:
    """A pairwise classifier bound to an ambiguous label and its negative counterpart."""

    classifier: ImageClassifier
    ambiguous_label: str
    negative_label: str


class ClassificationGate:
    """Runs the ensemble on one image and applies the single-winner rule."""

    def __init__(
        self,
        ensemble: Sequence[ImageClassifier],
        pool: InferencePool,
        *,
        tie_breakers: Iterable[TieBreaker] = (),
        negative_label: str = "rest",
    ) -> None:
        if not ensemble:
            raise ModelNotFoundError("No ensemble classifiers available")
        self._ensemble = tuple(ensemble)
        self._pool = pool
        self._negative_label = negative_label.lower()
        self._tie_breakers = {tb.ambiguous_label.lower(): tb for tb in tie_breakers}

    @property
    def ensemble(self) -> tuple[ImageClassifier, ...]:
        return self._ensemble

    @property
    def tie_breakers(self) -> tuple[TieBreaker, ...]:
        return tuple(self._tie_breakers.values())

    async def classify(self, image_bytes: bytes, threshold: float) -> DecisionOutcome:
        """Decide whether ``image_bytes`` belongs to exactly one label.

        Raises:
            ClassificationError: If any ensemble member fails. A missing vote is
                never treated as a negative one.
        """
        votes = await self._collect_votes(image_bytes)
        winners = select_winners(votes, threshold)

        if len(winners) == 1:
            tie_breaker = self._tie_breakers.get(winners[0].label.lower())
            if tie_breaker is not None:
                checked = await self._apply_tie_break(tie_breaker, winners[0], image_bytes)
                votes = [checked if vote is winners[0] else vote for vote in votes]
                winners = select_winners(votes, threshold)

        outcome = decide(winners, votes)
        logger.debug("Votes %s -> %s", _format_votes(votes, threshold), outcome)
        return outcome

    async def _collect_votes(self, image_bytes: bytes) -> list[ClassificationVote]:
        try:
            results = await self._pool.run_all([member.classify for member in self._ensemble], image_bytes)
        except ExceptionGroup as exc:
            failure = exc.exceptions[0]
            raise ClassificationError(f"Ensemble inference failed: {failure}") from failure

        return [vote for member_votes in results for vote in member_votes if vote.label.lower() != self._negative_label]

    async def _apply_tie_break(
        self,
        tie_breaker: TieBreaker,
        vote: ClassificationVote,
        image_bytes: bytes,
    ) -> ClassificationVote:
        try:
            pair_votes = await self._pool.run(tie_breaker.classifier.classify, image_bytes)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tie-break model %s failed, keeping vote: %s", tie_breaker.classifier.model_name, exc)
            return vote

        scores = {v.label.lower(): v.confidence for v in pair_votes}
        negative = scores.get(tie_breaker.negative_label.lower())
        ambiguous = scores.get(tie_breaker.ambiguous_label.lower())
        if negative is None or ambiguous is None:
            logger.warning(
                "Tie-break model %s did not score both %s and %s",
                tie_breaker.classifier.model_name,
                tie_breaker.ambiguous_label,
                tie_breaker.negative_label,
            )
            return vote

        if negative > ambiguous:
            logger.info(
                "Tie-break judged %s (%.3f > %.3f), dropping %s vote",
                tie_breaker.negative_label,
                negative,
                ambiguous,
                vote.label,
            )
            return replace(vote, confidence=0.0)
        return vote


def select_winners(votes: Iterable[ClassificationVote], threshold: float) -> list[ClassificationVote]:
    """Return the votes at or above ``threshold``."""
    return [vote for vote in votes if vote.confidence >= threshold]


def decide(winners: Sequence[ClassificationVote], votes: Iterable[ClassificationVote] = ()) -> DecisionOutcome:
    """Apply the single-winner rule to the votes that cleared the threshold."""
    all_votes = tuple(votes)
    if len(winners) == 1:
        return Accepted(label=winners[0].label, confidence=winners[0].confidence, votes=all_votes)
    if not winners:
        return Rejected(reason=RejectReason.NO_WINNER, votes=all_votes)
    return Rejected(reason=RejectReason.MULTIPLE_WINNERS, votes=all_votes)


def build_gate(
    settings: Settings,
    manager: ModelManager,
    pool: InferencePool,
    preprocessor: ImagePreprocessor,
) -> ClassificationGate:
    """Load every ensemble and tie-break model and assemble the gate.

    Raises:
        ModelNotFoundError: If no ensemble model is found.
        ModelLoadError: If a model file cannot be loaded.
    """
    manager.ensure_downloaded()

    ensemble_files = manager.discover(ModelRole.ENSEMBLE)
    if not ensemble_files:
        raise ModelNotFoundError(f"No ensemble models found under {settings.models_dir}/{settings.ensemble_subdir}")
    ensemble = [OnnxImageClassifier.load(f, manager.get_session(f), preprocessor) for f in ensemble_files]

    tie_breakers: list[TieBreaker] = []
    for model_file in manager.discover(ModelRole.TIE_BREAK):
        classifier = OnnxImageClassifier.load(model_file, manager.get_session(model_file), preprocessor)
        labels = {label.lower() for label in classifier.labels}
        bound = False
        for ambiguous, negative in settings.ambiguous_labels.items():
            if ambiguous.lower() in labels and negative.lower() in labels:
                tie_breakers.append(TieBreaker(classifier, ambiguous, negative))
                bound = True
        if not bound:
            logger.warning("Tie-break model %s matches no configured label pair, ignoring it", model_file.name)

    logger.info(
        "Classification gate ready: %d ensemble models, %d tie-break models",
        len(ensemble),
        len(tie_breakers),
    )
    return ClassificationGate(ensemble, pool, tie_breakers=tie_breakers, negative_label=settings.negative_label)


def _format_votes(votes: Iterable[ClassificationVote], threshold: float) -> str:
    return ", ".join(
        f"{'*' if vote.confidence >= threshold else ''}{vote.label}={vote.confidence:.3f}"
        for vote in sorted(votes, key=lambda v: v.label)
    )
