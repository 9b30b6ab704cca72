"""
Embedding matchers for the IDVERIFY system.

Each matcher compares the selfie and document face embeddings under a
different margin-based geometry and returns a normalized score in [0, 1]
together with its own matched flag, threshold and confidence bucket:

- ``TripletMatcher``: exponential decay of the euclidean distance
  (FaceNet triplet loss geometry).
- ``ArcFaceMatcher``: additive angular margin, ``s * cos(theta + m)``.
- ``CosFaceMatcher``: additive cosine margin, ``s * (cos(theta) - m)``.
- ``SphereFaceMatcher``: multiplicative angular margin, ``s * cos(m * theta)``.

Margin logits are squashed with ``sigmoid(logit / LOGIT_TEMPERATURE)``.
Every threshold is the score the matcher's own geometry assigns to its
calibrated boundary pair, so ``matched`` is always ``score >= threshold``.
"""

import math
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
import structlog

from .constants import (
    ARCFACE_MARGIN,
    ARCFACE_SCALE,
    COSFACE_MARGIN,
    COSFACE_SCALE,
    HIGH_CONFIDENCE_MARGIN,
    LOGIT_TEMPERATURE,
    MEDIUM_CONFIDENCE_MARGIN,
    SPHEREFACE_MARGIN,
    SPHEREFACE_SCALE,
    TRIPLET_DECAY,
    TRIPLET_MARGIN,
)
from .data_models import AlgorithmResult, Confidence
from .detection import FaceSample
from .exceptions import ScorerError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Scale a vector to unit length.

    Raises
    ------
    ValueError
        If the vector has zero norm.
    """
    vector = np.asarray(vector, dtype=np.float64).ravel()
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise ValueError("Cannot normalize a zero vector")
    return vector / norm


def sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def squash_logit(logit: float) -> float:
    return sigmoid(logit / LOGIT_TEMPERATURE)


def cosine_of(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between two embeddings, clipped to [-1, 1]."""
    return float(np.clip(np.dot(l2_normalize(a), l2_normalize(b)), -1.0, 1.0))


def confidence_for(score: float, threshold: float) -> Confidence:
    """Bucket the distance between a score and its threshold."""
    margin = abs(score - threshold)
    if margin >= HIGH_CONFIDENCE_MARGIN:
        return Confidence.HIGH
    if margin >= MEDIUM_CONFIDENCE_MARGIN:
        return Confidence.MEDIUM
    return Confidence.LOW


class FaceMatcher(ABC):
    """
    Base class for embedding matchers.

    Subclasses implement ``compare`` on raw embeddings; ``score`` adapts it
    to prepared samples and wraps failures in ``ScorerError``.
    """

    name: str = ""

    @property
    @abstractmethod
    def threshold(self) -> float:
        """Calibrated threshold in score space."""

    @abstractmethod
    def compare(self, selfie: np.ndarray, document: np.ndarray) -> AlgorithmResult:
        """Score two embeddings."""

    def _result(
        self,
        score: float,
        distance: Optional[float] = None,
        angle: Optional[float] = None,
        cosine: Optional[float] = None,
    ) -> AlgorithmResult:
        score = float(np.clip(score, 0.0, 1.0))
        threshold = self.threshold
        return AlgorithmResult(
            name=self.name,
            score=score,
            matched=score >= threshold,
            confidence=confidence_for(score, threshold),
            threshold=threshold,
            distance=distance,
            angle=angle,
            cosine=cosine,
        )

    def score(self, selfie: FaceSample, document: FaceSample) -> AlgorithmResult:
        """
        Score a selfie/document pair.

        Raises
        ------
        ScorerError
            If the embeddings are missing or cannot be compared.
        """
        try:
            result = self.compare(selfie.embedding, document.embedding)
        except ScorerError:
            raise
        except Exception as e:
            raise ScorerError(
                f"Matcher '{self.name}' failed: {str(e)}", scorer=self.name
            ) from e

        logger.debug(
            "Matcher completed",
            scorer=self.name,
            score=round(result.score, 4),
            threshold=round(result.threshold, 4),
            matched=result.matched,
        )
        return result


class TripletMatcher(FaceMatcher):
    """
    Euclidean distance matcher from the triplet loss embedding space.

    Parameters
    ----------
    margin : float, default=TRIPLET_MARGIN
        Triplet margin; pairs closer than ``2 * margin`` match.
    decay : float, default=TRIPLET_DECAY
        Rate of the exponential distance-to-score mapping.
    """

    name = "triplet"

    def __init__(self, margin: float = TRIPLET_MARGIN, decay: float = TRIPLET_DECAY) -> None:
        self.margin = margin
        self.decay = decay

    @property
    def threshold(self) -> float:
        return math.exp(-2.0 * self.margin * self.decay)

    def compare(self, selfie: np.ndarray, document: np.ndarray) -> AlgorithmResult:
        distance = float(np.linalg.norm(l2_normalize(selfie) - l2_normalize(document)))
        return self._result(math.exp(-distance * self.decay), distance=distance)


class ArcFaceMatcher(FaceMatcher):
    """Additive angular margin matcher."""

    name = "arcface"

    def __init__(self, scale: float = ARCFACE_SCALE, margin: float = ARCFACE_MARGIN) -> None:
        self.scale = scale
        self.margin = margin

    def _score_angle(self, theta: float) -> float:
        return squash_logit(self.scale * math.cos(min(theta + self.margin, math.pi)))

    @property
    def threshold(self) -> float:
        # Boundary pair sits at an angle of 1.5 margins
        return self._score_angle(1.5 * self.margin)

    def compare(self, selfie: np.ndarray, document: np.ndarray) -> AlgorithmResult:
        cosine = cosine_of(selfie, document)
        theta = math.acos(cosine)
        return self._result(
            self._score_angle(theta), angle=math.degrees(theta), cosine=cosine
        )


class CosFaceMatcher(FaceMatcher):
    """Additive cosine margin matcher."""

    name = "cosface"

    def __init__(self, scale: float = COSFACE_SCALE, margin: float = COSFACE_MARGIN) -> None:
        self.scale = scale
        self.margin = margin

    def _score_cosine(self, cosine: float) -> float:
        return squash_logit(self.scale * (cosine - self.margin))

    @property
    def threshold(self) -> float:
        return self._score_cosine(0.5 + self.margin)

    def compare(self, selfie: np.ndarray, document: np.ndarray) -> AlgorithmResult:
        cosine = cosine_of(selfie, document)
        return self._result(self._score_cosine(cosine), cosine=cosine)


class SphereFaceMatcher(FaceMatcher):
    """Multiplicative angular margin matcher."""

    name = "sphereface"

    def __init__(
        self, scale: float = SPHEREFACE_SCALE, margin: float = SPHEREFACE_MARGIN
    ) -> None:
        self.scale = scale
        self.margin = margin

    def _score_angle(self, theta: float) -> float:
        return squash_logit(self.scale * math.cos(min(self.margin * theta, math.pi)))

    @property
    def threshold(self) -> float:
        return self._score_angle(math.pi / 4.0 * self.margin)

    def compare(self, selfie: np.ndarray, document: np.ndarray) -> AlgorithmResult:
        cosine = cosine_of(selfie, document)
        theta = math.acos(cosine)
        return self._result(
            self._score_angle(theta), angle=math.degrees(theta), cosine=cosine
        )


def default_matchers() -> List[FaceMatcher]:
    """The four embedding matchers with their default calibration."""
    return [TripletMatcher(), ArcFaceMatcher(), CosFaceMatcher(), SphereFaceMatcher()]
